"""Decoding of the agent CLI's ``stream-json`` output.

Every stdout line becomes exactly one event. Lines that are not JSON objects of
a known ``type`` become :class:`UnrecognizedEvent` so their raw text can still be
scanned for stage markers. Nothing in this module raises on bad input.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Union

from genbuilder.core.workflow import GenerationStage


@dataclass(frozen=True)
class ToolUse:
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssistantEvent:
    texts: tuple[str, ...] = ()
    tool_uses: tuple[ToolUse, ...] = ()


@dataclass(frozen=True)
class ResultEvent:
    text: str


@dataclass(frozen=True)
class UnrecognizedEvent:
    raw: str


StreamEvent = Union[AssistantEvent, ResultEvent, UnrecognizedEvent]


def decode_line(line: str) -> StreamEvent:
    try:
        payload = json.loads(line)
    except (ValueError, TypeError):
        return UnrecognizedEvent(line)
    if not isinstance(payload, dict):
        return UnrecognizedEvent(line)

    kind = payload.get("type")
    if kind == "assistant":
        return _decode_assistant(payload, line)
    if kind == "result":
        result = payload.get("result")
        if isinstance(result, str):
            return ResultEvent(result)
    return UnrecognizedEvent(line)


def _decode_assistant(payload: dict, line: str) -> StreamEvent:
    message = payload.get("message")
    if not isinstance(message, dict):
        return UnrecognizedEvent(line)
    content = message.get("content")
    if not isinstance(content, list):
        return AssistantEvent()

    texts: list[str] = []
    tool_uses: list[ToolUse] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
        elif block.get("type") == "tool_use" and isinstance(block.get("name"), str):
            tool_input = block.get("input")
            tool_uses.append(ToolUse(block["name"], tool_input if isinstance(tool_input, dict) else {}))
    return AssistantEvent(tuple(texts), tuple(tool_uses))


def event_texts(event: StreamEvent) -> tuple[str, ...]:
    """Text payloads of an event that may carry stage markers."""
    if isinstance(event, AssistantEvent):
        return event.texts
    if isinstance(event, ResultEvent):
        return (event.text,)
    return (event.raw,)


def marker_pattern(tag: str) -> re.Pattern:
    return re.compile(r"\[" + re.escape(tag) + r":STAGE:(\w+)\]")


def scan_markers(text: str, tag: str) -> list[GenerationStage]:
    """Return recognized stages in the order their markers appear in ``text``."""
    stages = []
    for match in marker_pattern(tag).finditer(text):
        stage = GenerationStage.parse(match.group(1))
        if stage is not None:
            stages.append(stage)
    return stages


_WORKSPACE_PREFIX = re.compile(r"^.*/apps/[^/]+/")


def describe_tool_use(tool: ToolUse) -> str | None:
    """Short progress line for a tool call, or None for tools we don't surface."""
    file_path = tool.input.get("file_path") or tool.input.get("path")
    short_path = _WORKSPACE_PREFIX.sub("", file_path) if isinstance(file_path, str) and file_path else None

    if tool.name == "Write":
        return f"Creating {short_path}" if short_path else "Creating file..."
    if tool.name == "Edit":
        return f"Editing {short_path}" if short_path else "Editing file..."
    if tool.name == "Read":
        return f"Reading {short_path}" if short_path else "Reading file..."
    if tool.name == "Bash":
        description = tool.input.get("description")
        if isinstance(description, str) and description:
            return description[:80]
        return "Running command..."
    if tool.name in ("Glob", "Grep"):
        return "Searching codebase..."
    return None
