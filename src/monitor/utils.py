"""Shared utilities for the session monitor.

Small, stateless helpers used by the parser, the tailer and the matcher.
"""

import json
from datetime import datetime, timezone
from typing import Any

from .config import PRICING, DEFAULT_PRICING_FAMILY


def get_pricing(model: str | None) -> dict:
    """Return the per-million-token price table for a model name."""
    if model:
        lowered = model.lower()
        for family, prices in PRICING.items():
            if family in lowered:
                return prices
    return PRICING[DEFAULT_PRICING_FAMILY]


def calculate_cost(usage: dict, model: str | None = None) -> float:
    """Calculate estimated cost from token usage.

    Args:
        usage: Dictionary containing token counts:
            - input_tokens: Regular input tokens
            - output_tokens: Output tokens
            - cache_read_input_tokens: Cached input tokens read
            - cache_creation_input_tokens: Tokens used to create cache
        model: Model name used to select pricing (Opus if unknown)

    Returns:
        Estimated cost in dollars, rounded to 4 decimal places
    """
    prices = get_pricing(model)
    input_tokens = usage.get('input_tokens', 0)
    output_tokens = usage.get('output_tokens', 0)
    cache_read = usage.get('cache_read_input_tokens', 0)
    cache_write = usage.get('cache_creation_input_tokens', 0)

    cost = (
        (input_tokens / 1_000_000) * prices['input_per_mtok'] +
        (output_tokens / 1_000_000) * prices['output_per_mtok'] +
        (cache_read / 1_000_000) * prices['cache_read_per_mtok'] +
        (cache_write / 1_000_000) * prices['cache_write_per_mtok']
    )

    return round(cost, 4)


def parse_jsonl_line(line: str | bytes) -> dict[str, Any] | None:
    """Safely parse a single JSONL line into a dict.

    Returns None for undecodable bytes, invalid JSON, JSON that is not an
    object, and input the json module refuses (oversized integer literals,
    nesting deeper than the recursion limit).
    """
    try:
        if isinstance(line, bytes):
            line = line.decode('utf-8')
        data = json.loads(line.strip())
    # ValueError covers JSONDecodeError and UnicodeDecodeError
    except (ValueError, RecursionError):
        return None
    return data if isinstance(data, dict) else None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp, with or without fractional seconds.

    Naive timestamps are taken as UTC. Returns None when unparsable.
    """
    if not isinstance(value, str) or not value:
        return None
    text = value.replace('Z', '+00:00')
    for fmt in ('%Y-%m-%dT%H:%M:%S.%f%z', '%Y-%m-%dT%H:%M:%S%z'):
        try:
            parsed = datetime.strptime(text, fmt)
            break
        except ValueError:
            continue
    else:
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def isoformat(value: datetime | None) -> str | None:
    """Serialize a datetime for JSON payloads."""
    return value.isoformat() if value else None


def encode_project_path(path: str) -> str:
    """Convert a project path to the directory name used under projects/.

    The CLI replaces "/" and "_" with "-", e.g.
    /Users/me/git/new_hub -> -Users-me-git-new-hub. The encoding is lossy,
    so two projects may share a directory.
    """
    return path.replace('/', '-').replace('_', '-')
