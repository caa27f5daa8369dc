"""JSONL transcript decoding.

This module provides:
- Typed transcript entries and content blocks
- Decoded tool inputs for the tools we know, plus an opaque fallback
- decode_entry(), which never raises on malformed input

Transcripts contain record kinds we do not care about (file-history
snapshots, queue operations, ...); those decode to None and are skipped.
"""

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from ..utils import parse_jsonl_line

# Top-level record kinds the aggregator understands. 'system' records are
# kept only for their timestamps.
USER = 'user'
ASSISTANT = 'assistant'
SUMMARY = 'summary'
SYSTEM = 'system'
KNOWN_ENTRY_TYPES = frozenset({USER, ASSISTANT, SUMMARY, SYSTEM})

PREVIEW_LENGTH = 50


# ============================================================================
# Tool Inputs
# ============================================================================

@dataclass(frozen=True)
class EditInput:
    file_path: str
    old_string: Optional[str] = None
    new_string: Optional[str] = None
    replace_all: Optional[bool] = None

    def preview(self) -> Optional[str]:
        return Path(self.file_path).name


@dataclass(frozen=True)
class WriteInput:
    file_path: str
    content: Optional[str] = None

    def preview(self) -> Optional[str]:
        return Path(self.file_path).name


@dataclass(frozen=True)
class MultiEditInput:
    file_path: str
    edits: tuple[dict[str, str], ...] = ()

    def preview(self) -> Optional[str]:
        return Path(self.file_path).name


@dataclass(frozen=True)
class ReadInput:
    file_path: str

    def preview(self) -> Optional[str]:
        return Path(self.file_path).name


@dataclass(frozen=True)
class BashInput:
    command: str
    description: Optional[str] = None

    def preview(self) -> Optional[str]:
        return self.command[:PREVIEW_LENGTH]


@dataclass(frozen=True)
class SearchInput:
    """Grep and Glob."""
    pattern: str
    path: Optional[str] = None

    def preview(self) -> Optional[str]:
        return self.pattern


@dataclass(frozen=True)
class OpaqueInput:
    """Input of a tool we have no schema for, kept as raw JSON."""
    raw: dict = field(default_factory=dict)

    def preview(self) -> Optional[str]:
        # Try the common argument names in order of usefulness
        path = self.raw.get('file_path')
        if isinstance(path, str):
            return Path(path).name
        command = self.raw.get('command')
        if isinstance(command, str):
            return command[:PREVIEW_LENGTH]
        pattern = self.raw.get('pattern')
        if isinstance(pattern, str):
            return pattern
        query = self.raw.get('query')
        if isinstance(query, str):
            return query[:PREVIEW_LENGTH]
        return None


ToolInput = Union[
    EditInput, WriteInput, MultiEditInput, ReadInput, BashInput, SearchInput, OpaqueInput
]


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _opt_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _opt_float(value: Any) -> Optional[float]:
    """Finite float from a JSON number; None for bools, NaN, infinities and
    integers too large to represent."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _decode_edits(value: Any) -> tuple[dict[str, str], ...]:
    """Normalize MultiEdit's edit list to string-valued dicts, dropping empties."""
    if not isinstance(value, list):
        return ()
    edits = []
    for edit in value:
        if not isinstance(edit, dict):
            continue
        normalized = {}
        if isinstance(edit.get('old_string'), str):
            normalized['old_string'] = edit['old_string']
        if isinstance(edit.get('new_string'), str):
            normalized['new_string'] = edit['new_string']
        if isinstance(edit.get('replace_all'), bool):
            normalized['replace_all'] = str(edit['replace_all']).lower()
        if normalized:
            edits.append(normalized)
    return tuple(edits)


def decode_tool_input(name: str, raw: Any) -> Optional[ToolInput]:
    """Decode a tool_use input for a known tool name.

    Falls back to OpaqueInput when the tool is unknown or the input does not
    have the fields we expect for it.
    """
    if not isinstance(raw, dict):
        return None

    file_path = _opt_str(raw.get('file_path'))

    if name == 'Edit' and file_path:
        return EditInput(
            file_path=file_path,
            old_string=_opt_str(raw.get('old_string')),
            new_string=_opt_str(raw.get('new_string')),
            replace_all=_opt_bool(raw.get('replace_all')),
        )
    if name == 'Write' and file_path:
        return WriteInput(file_path=file_path, content=_opt_str(raw.get('content')))
    if name == 'MultiEdit' and file_path:
        return MultiEditInput(file_path=file_path, edits=_decode_edits(raw.get('edits')))
    if name == 'Read' and file_path:
        return ReadInput(file_path=file_path)
    if name == 'Bash' and isinstance(raw.get('command'), str):
        return BashInput(command=raw['command'], description=_opt_str(raw.get('description')))
    if name in ('Grep', 'Glob') and isinstance(raw.get('pattern'), str):
        return SearchInput(pattern=raw['pattern'], path=_opt_str(raw.get('path')))

    return OpaqueInput(raw=raw)


# ============================================================================
# Content Blocks
# ============================================================================

@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: Optional[str]
    name: Optional[str]
    input: Optional[ToolInput] = None


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: Optional[str]
    content: Any = None

    def text(self) -> str:
        """Textual payload of the result (string content or text parts)."""
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            parts = [
                item['text'] for item in self.content
                if isinstance(item, dict) and isinstance(item.get('text'), str)
            ]
            return '\n'.join(parts)
        return ''

    @property
    def is_error(self) -> bool:
        return 'error' in self.text().lower()


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str = ''


@dataclass(frozen=True)
class OpaqueBlock:
    """A content block whose type we do not recognize (images, etc.)."""
    type: str
    raw: dict = field(default_factory=dict)


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, ThinkingBlock, OpaqueBlock]


def decode_content_block(raw: Any) -> ContentBlock:
    """Decode one content block. Unrecognized shapes become OpaqueBlock."""
    if not isinstance(raw, dict) or not isinstance(raw.get('type'), str):
        return OpaqueBlock(type='unknown', raw=raw if isinstance(raw, dict) else {})

    block_type = raw['type']

    if block_type == 'text':
        return TextBlock(text=_opt_str(raw.get('text')) or '')

    if block_type == 'tool_use':
        name = _opt_str(raw.get('name'))
        return ToolUseBlock(
            id=_opt_str(raw.get('id')),
            name=name,
            input=decode_tool_input(name or '', raw.get('input')),
        )

    if block_type == 'tool_result':
        return ToolResultBlock(
            tool_use_id=_opt_str(raw.get('tool_use_id')),
            content=raw.get('content'),
        )

    if block_type == 'thinking':
        return ThinkingBlock(thinking=_opt_str(raw.get('thinking')) or '')

    return OpaqueBlock(type=block_type, raw=raw)


# ============================================================================
# Entries
# ============================================================================

@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0


@dataclass(frozen=True)
class Message:
    role: Optional[str] = None
    model: Optional[str] = None
    content: tuple[ContentBlock, ...] = ()
    usage: Optional[Usage] = None


@dataclass(frozen=True)
class TranscriptEntry:
    type: str
    timestamp: Optional[str] = None
    uuid: Optional[str] = None
    message: Optional[Message] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    git_branch: Optional[str] = None
    slug: Optional[str] = None

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        return self.message.content if self.message else ()


def _token_count(usage: dict, key: str) -> int:
    value = usage.get(key)
    # bool is an int subclass; a boolean token count is malformed
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


def _decode_usage(raw: Any) -> Optional[Usage]:
    if not isinstance(raw, dict):
        return None
    return Usage(
        input_tokens=_token_count(raw, 'input_tokens'),
        output_tokens=_token_count(raw, 'output_tokens'),
        cache_read_input_tokens=_token_count(raw, 'cache_read_input_tokens'),
        cache_creation_input_tokens=_token_count(raw, 'cache_creation_input_tokens'),
    )


def _decode_message(raw: dict) -> Optional[Message]:
    """Decode message; None means the shape is wrong and the entry is dropped."""
    content = raw.get('content')
    if content is None:
        blocks: tuple[ContentBlock, ...] = ()
    elif isinstance(content, str):
        blocks = (TextBlock(text=content),)
    elif isinstance(content, list):
        blocks = tuple(decode_content_block(item) for item in content)
    else:
        return None

    return Message(
        role=_opt_str(raw.get('role')),
        model=_opt_str(raw.get('model')),
        content=blocks,
        usage=_decode_usage(raw.get('usage')),
    )


def decode_entry(line: str | bytes) -> Optional[TranscriptEntry]:
    """Decode one raw transcript line.

    Returns None for anything that does not look like a transcript record
    we understand; never raises for malformed data.
    """
    data = parse_jsonl_line(line)
    if data is None:
        return None

    entry_type = data.get('type')
    if entry_type not in KNOWN_ENTRY_TYPES:
        return None

    message = None
    raw_message = data.get('message')
    if raw_message is not None:
        if not isinstance(raw_message, dict):
            return None
        message = _decode_message(raw_message)
        if message is None:
            return None

    cost = data.get('costUSD')
    duration = data.get('durationMs')

    return TranscriptEntry(
        type=entry_type,
        timestamp=_opt_str(data.get('timestamp')),
        uuid=_opt_str(data.get('uuid')),
        message=message,
        cost_usd=_opt_float(cost),
        duration_ms=duration if isinstance(duration, int) and not isinstance(duration, bool) else None,
        git_branch=_opt_str(data.get('gitBranch')) or None,
        slug=_opt_str(data.get('slug')) or None,
    )


def extract_text_preview(blocks: tuple[ContentBlock, ...], limit: int = 80) -> str:
    """First `limit` characters of the first text block, or ''."""
    for block in blocks:
        if isinstance(block, TextBlock):
            return block.text[:limit]
    return ''
