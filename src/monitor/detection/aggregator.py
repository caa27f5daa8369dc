"""Transcript aggregation.

This module provides functions for:
- Folding decoded transcript entries into a per-session ParseResult
- Parsing a whole transcript file
- Parsing incremental batches of new lines
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config import BACKGROUND_TOOLS, DEFAULT_APPROVAL_TIMEOUT_SECONDS
from ..logging_config import get_logger
from ..utils import parse_timestamp
from .activity import update_current_status
from .jsonl_parser import (
    ASSISTANT,
    USER,
    EditInput,
    MultiEditInput,
    TextBlock,
    ThinkingBlock,
    ToolInput,
    ToolResultBlock,
    ToolUseBlock,
    TranscriptEntry,
    WriteInput,
    decode_entry,
    extract_text_preview,
)
from .models import (
    ActivityEntry,
    ActivityType,
    CodeChangeInput,
    ParseResult,
    PendingToolUse,
)

logger = get_logger(__name__, namespace='parser')

ASSISTANT_PREVIEW_LENGTH = 50
USER_PREVIEW_LENGTH = 80


def extract_code_change_input(name: str, tool_input: Optional[ToolInput]) -> Optional[CodeChangeInput]:
    """Structured payload for code-changing tools (Edit, Write, MultiEdit)."""
    if name == 'Edit' and isinstance(tool_input, EditInput):
        return CodeChangeInput(
            tool_type='Edit',
            file_path=tool_input.file_path,
            old_string=tool_input.old_string,
            new_string=tool_input.new_string,
            replace_all=tool_input.replace_all,
        )
    if name == 'Write' and isinstance(tool_input, WriteInput):
        return CodeChangeInput(
            tool_type='Write',
            file_path=tool_input.file_path,
            new_string=tool_input.content,
        )
    if name == 'MultiEdit' and isinstance(tool_input, MultiEditInput):
        return CodeChangeInput(
            tool_type='MultiEdit',
            file_path=tool_input.file_path,
            edits=tool_input.edits,
        )
    return None


def _add_activity(
    result: ParseResult,
    activity_type: ActivityType,
    description: str,
    timestamp: datetime,
    tool_input: Optional[CodeChangeInput] = None,
) -> None:
    # recent_activities is a bounded deque: the oldest entry falls off the front
    result.recent_activities.append(ActivityEntry(
        timestamp=timestamp,
        type=activity_type,
        description=description,
        tool_input=tool_input,
    ))


def _process_content_blocks(blocks, timestamp: datetime, result: ParseResult) -> None:
    for block in blocks:
        if isinstance(block, ToolUseBlock):
            if not block.name or not block.id:
                continue
            result.tool_calls[block.name] = result.tool_calls.get(block.name, 0) + 1

            preview = block.input.preview() if block.input else None
            code_change = extract_code_change_input(block.name, block.input)
            result.pending_tool_uses[block.id] = PendingToolUse(
                tool_name=block.name,
                tool_use_id=block.id,
                timestamp=timestamp,
                input=preview,
                code_change=code_change,
            )
            _add_activity(
                result,
                ActivityType.tool_use(block.name),
                preview or block.name,
                timestamp,
                tool_input=code_change,
            )

        elif isinstance(block, ToolResultBlock):
            if not block.tool_use_id:
                continue
            pending = result.pending_tool_uses.pop(block.tool_use_id, None)
            tool_name = pending.tool_name if pending else 'unknown'
            success = not block.is_error
            _add_activity(
                result,
                ActivityType.tool_result(tool_name, success),
                "Completed" if success else "Error",
                timestamp,
            )

        elif isinstance(block, ThinkingBlock):
            _add_activity(result, ActivityType.thinking(), "Thinking...", timestamp)

        elif isinstance(block, TextBlock):
            _add_activity(
                result,
                ActivityType.assistant_message(),
                block.text[:ASSISTANT_PREVIEW_LENGTH],
                timestamp,
            )


def process_entry(entry: TranscriptEntry, result: ParseResult, now: Optional[datetime] = None) -> None:
    """Fold one decoded entry into the aggregate."""
    timestamp = parse_timestamp(entry.timestamp)

    if timestamp is not None:
        if result.session_started_at is None:
            result.session_started_at = timestamp
        result.last_activity_at = timestamp

    if entry.git_branch:
        result.git_branch = entry.git_branch

    # Entries without a usable timestamp inherit the last known one
    activity_time = timestamp or result.last_activity_at or now or datetime.now(timezone.utc)

    if entry.type == USER:
        result.message_count += 1

        # Tool results arrive inside user-role entries. Only the result
        # blocks matter here; user text is recorded once below.
        result_blocks = [b for b in entry.blocks if isinstance(b, ToolResultBlock)]
        _process_content_blocks(result_blocks, activity_time, result)

        text_preview = extract_text_preview(entry.blocks, USER_PREVIEW_LENGTH)
        if text_preview.strip():
            _add_activity(result, ActivityType.user_message(), text_preview, activity_time)

    elif entry.type == ASSISTANT:
        result.message_count += 1

        message = entry.message
        if message is not None:
            if message.model:
                result.model = message.model
            if message.usage is not None:
                result.input_tokens += message.usage.input_tokens
                result.output_tokens += message.usage.output_tokens
                result.cache_read_tokens += message.usage.cache_read_input_tokens
                result.cache_creation_tokens += message.usage.cache_creation_input_tokens

        _process_content_blocks(entry.blocks, activity_time, result)


def parse_new_lines(
    lines: Iterable[str | bytes],
    result: ParseResult,
    approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    now: Optional[datetime] = None,
    background_tools: Iterable[str] = BACKGROUND_TOOLS,
) -> int:
    """Fold a batch of raw lines into result and recompute its status.

    Returns the number of lines that decoded to an entry.
    """
    entries = [entry for entry in (decode_entry(line) for line in lines if line.strip()) if entry]
    return apply_entries(
        entries,
        result,
        approval_timeout_seconds=approval_timeout_seconds,
        now=now,
        background_tools=background_tools,
    )


def apply_entries(
    entries: Iterable[TranscriptEntry],
    result: ParseResult,
    approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    now: Optional[datetime] = None,
    background_tools: Iterable[str] = BACKGROUND_TOOLS,
) -> int:
    """Fold already-decoded entries into result and recompute its status."""
    count = 0
    for entry in entries:
        process_entry(entry, result, now=now)
        count += 1
    update_current_status(
        result,
        now=now,
        approval_timeout_seconds=approval_timeout_seconds,
        background_tools=background_tools,
    )
    return count


def parse_session_file(
    path: Path | str,
    approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    now: Optional[datetime] = None,
    background_tools: Iterable[str] = BACKGROUND_TOOLS,
) -> ParseResult:
    """Parse an entire session file and return the aggregated state.

    An unreadable file yields an empty (idle) result.
    """
    result = ParseResult()

    try:
        data = Path(path).read_bytes()
    except OSError as e:
        logger.warning("Failed to read session file %s: %s", path, e)
        return result

    lines = data.split(b'\n')
    parsed = parse_new_lines(
        lines,
        result,
        approval_timeout_seconds=approval_timeout_seconds,
        now=now,
        background_tools=background_tools,
    )

    logger.debug(
        "Parsed %s: %d entries, %d msgs, %d input, %d output, %d pending",
        path, parsed, result.message_count, result.input_tokens,
        result.output_tokens, len(result.pending_tool_uses),
    )
    return result
