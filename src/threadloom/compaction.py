"""Summarizing compaction: keep the conversation, collapse the noise.

The last ``preserve_recent_events`` events are kept verbatim. Older system
prompts, messages and tool calls are kept; older tool results are kept but
truncated; everything else becomes one ``LOCAL_SYSTEM_MESSAGE`` summary.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence

from threadloom import db
from threadloom.threads import ThreadEvent

log = logging.getLogger(__name__)

SUMMARY_EVENT_TYPE = "LOCAL_SYSTEM_MESSAGE"

PRESERVED_TYPES = frozenset(
    {
        "SYSTEM_PROMPT",
        "USER_SYSTEM_PROMPT",
        "USER_MESSAGE",
        "AGENT_MESSAGE",
        "TOOL_CALL",
        "TOOL_RESULT",
    }
)

IMPORTANT_KEYWORDS = (
    "TODO",
    "TASK",
    "FIXME",
    "BUG",
    "ERROR",
    "IMPORTANT",
    "CRITICAL",
    "ACTION ITEM",
    "DECISION",
    "REQUIREMENT",
    "ISSUE",
)

TRUNCATION_MARKER = "[results truncated to save space.]"


def estimate_tokens(events: Sequence[ThreadEvent]) -> int:
    """Rough token count: four characters per token."""
    total = 0
    for event in events:
        text = event.data if isinstance(event.data, str) else json.dumps(event.data, default=str)
        total += (len(text) + 3) // 4
    return total


def _truncate_lines(text: str, max_lines: int) -> str | None:
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return None
    return "\n".join([*lines[:max_lines], TRUNCATION_MARKER])


def truncate_tool_result(event: ThreadEvent, max_lines: int = 3) -> ThreadEvent:
    data = event.data
    if isinstance(data, str):
        truncated = _truncate_lines(data, max_lines)
        if truncated is None:
            return event
        return ThreadEvent(event.id, event.thread_id, event.type, event.timestamp, truncated)
    if isinstance(data, dict) and isinstance(data.get("content"), list):
        text = "\n".join(
            block["text"]
            for block in data["content"]
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
        )
        truncated = _truncate_lines(text, max_lines)
        if truncated is None:
            return event
        new_data = {**data, "content": [{"type": "text", "text": truncated}]}
        return ThreadEvent(event.id, event.thread_id, event.type, event.timestamp, new_data)
    return event


def is_important(event: ThreadEvent) -> bool:
    if event.type in PRESERVED_TYPES:
        return True
    if isinstance(event.data, str):
        upper = event.data.upper()
        return any(keyword in upper for keyword in IMPORTANT_KEYWORDS)
    if isinstance(event.data, dict | list):
        upper = json.dumps(event.data, default=str).upper()
        return "ERROR" in upper or "FAILED" in upper
    return False


class SummarizeStrategy:
    def __init__(self, preserve_recent_events: int = 10, truncate_lines: int = 3) -> None:
        self.preserve_recent_events = preserve_recent_events
        self.truncate_lines = truncate_lines

    def compact(self, events: Sequence[ThreadEvent]) -> list[ThreadEvent]:
        if len(events) <= self.preserve_recent_events:
            return list(events)
        split = len(events) - self.preserve_recent_events
        older, recent = events[:split], events[split:]

        important: list[ThreadEvent] = []
        summarizable: list[ThreadEvent] = []
        for event in older:
            if not is_important(event):
                summarizable.append(event)
            elif event.type == "TOOL_RESULT":
                important.append(truncate_tool_result(event, self.truncate_lines))
            else:
                important.append(event)

        summary = self._summary_event(summarizable)
        return [*summary, *important, *recent]

    def _summary_event(self, events: list[ThreadEvent]) -> list[ThreadEvent]:
        if not events:
            return []
        original_tokens = estimate_tokens(events)
        content = _describe(events, original_tokens)
        event = ThreadEvent(
            id=db.new_id("summary_"),
            thread_id=events[0].thread_id,
            type=SUMMARY_EVENT_TYPE,
            timestamp=events[-1].timestamp,
            data=content,
        )
        log.info(
            "Compaction summary: %d events (~%d tokens) -> ~%d tokens",
            len(events),
            original_tokens,
            estimate_tokens([event]),
        )
        return [event]


def _format_span(start: str, end: str) -> str:
    minutes = round(
        (db.parse_timestamp(end) - db.parse_timestamp(start)).total_seconds() / 60
    )
    if minutes < 1:
        return "less than a minute"
    if minutes < 60:
        return f"{minutes} minutes"
    if minutes < 1440:
        hours = round(minutes / 60)
        return f"{hours} hour{'s' if hours > 1 else ''}"
    days = round(minutes / 1440)
    return f"{days} day{'s' if days > 1 else ''}"


def _describe(events: list[ThreadEvent], original_tokens: int) -> str:
    lines = [
        f"Compaction summary ({len(events)} events, ~{original_tokens} tokens compressed)",
        f"Period: {_format_span(events[0].timestamp, events[-1].timestamp)}",
    ]
    types = sorted({e.type for e in events})
    lines.append(f"Event types: {', '.join(types)}")
    return "\n".join(lines)
