"""Normalize provider stdout into display text.

Providers print plain text, one JSON document, an array of content blocks,
or newline-delimited JSON events. ``normalize`` reduces every shape to a
single string. Text is pulled out of a JSON block by walking
``BLOCK_VARIANTS`` in order; the first variant yielding non-blank text wins.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

ANSI_CODE_PATTERN = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)```")
PROJECT_OBJECT_PATTERN = re.compile(r"(\{[\s\S]*?\"project\"[\s\S]*\})\s*$")
ANY_OBJECT_PATTERN = re.compile(r"(\{[\s\S]*\})")
ANY_ARRAY_PATTERN = re.compile(r"(\[[\s\S]*\])")

RESULT_SUCCESS_MESSAGE = "Agent completed successfully (no textual output)."
RESULT_ERROR_MESSAGE = "Agent finished with an error."
RESULT_EMPTY_MESSAGE = "Agent session completed without output."

_METADATA_FIELDS = ("type", "model", "usage", "stop_reason")
# Tool results and session bookkeeping in a stream are never the answer.
NON_ANSWER_EVENT_TYPES = frozenset({"user", "system"})
_NOT_JSON = object()


class NormalizedOutput(BaseModel):
    content: str
    metadata: Optional[Dict[str, Any]] = None


BlockExtractor = Callable[[Dict[str, Any]], str]


def _string_field(name: str) -> BlockExtractor:
    def extract(block: Dict[str, Any]) -> str:
        value = block.get(name)
        return value if isinstance(value, str) else ""

    return extract


def _message_field(block: Dict[str, Any]) -> str:
    value = block.get("message")
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return extract_block_text(value)
    return ""


def _string_result(block: Dict[str, Any]) -> str:
    # Providers often nest a JSON-encoded document inside ``result``.
    value = block.get("result")
    if isinstance(value, str) and value.strip():
        return normalize(value).content
    return ""


def _object_result(block: Dict[str, Any]) -> str:
    value = block.get("result")
    if isinstance(value, dict):
        return extract_block_text(value)
    return ""


def _content_items(block: Dict[str, Any]) -> str:
    value = block.get("content")
    if not isinstance(value, list):
        return ""
    parts: List[str] = []
    for item in value:
        if isinstance(item, str):
            text = item
        elif isinstance(item, dict):
            text = extract_block_text(item)
        else:
            continue
        if text.strip():
            parts.append(text)
    return "\n".join(parts)


def _candidate_parts(block: Dict[str, Any]) -> str:
    candidates = block.get("candidates")
    if not isinstance(candidates, list):
        return ""
    rendered: List[str] = []
    for candidate in candidates:
        content = candidate.get("content") if isinstance(candidate, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            continue
        texts = [
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"].strip()
        ]
        if texts:
            rendered.append("\n".join(texts))
    return "\n\n".join(rendered)


BLOCK_VARIANTS: Tuple[Tuple[str, BlockExtractor], ...] = (
    ("response", _string_field("response")),
    ("output", _string_field("output")),
    ("message", _message_field),
    ("content", _string_field("content")),
    ("text", _string_field("text")),
    ("result", _string_result),
    ("result_object", _object_result),
    ("content_items", _content_items),
    ("candidates", _candidate_parts),
)


def match_block(block: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """Return ``(variant, text)`` for the first variant that yields text."""
    for variant, extract in BLOCK_VARIANTS:
        text = extract(block)
        if text and text.strip():
            return variant, text
    return None


def extract_block_text(block: Dict[str, Any]) -> str:
    matched = match_block(block)
    return matched[1] if matched else ""


def sanitize_text(text: str) -> str:
    """Strip ANSI escapes and control characters, keeping newlines and tabs."""
    text = text.replace("\r\n", "\n")
    text = ANSI_CODE_PATTERN.sub("", text)
    return CONTROL_CHAR_PATTERN.sub("", text)


def normalize(raw: Optional[str]) -> NormalizedOutput:
    """Turn raw provider stdout into human-readable content."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return NormalizedOutput(content="")

    parsed = _try_parse_json(trimmed)
    if parsed is _NOT_JSON or parsed is None:
        line_count = sum(1 for line in trimmed.splitlines() if line.strip())
        events = list(_iter_json_lines(trimmed))
        if _is_event_stream(events, line_count):
            normalized = _normalize_events(events)
            # Prose around the JSON lines is kept when the events carry no text.
            if normalized.content or len(events) == line_count:
                return normalized
        return NormalizedOutput(content=sanitize_text(trimmed))

    if isinstance(parsed, list):
        return _normalize_blocks(parsed)
    if isinstance(parsed, dict):
        return _normalize_object(parsed)
    if isinstance(parsed, str):
        return NormalizedOutput(content=sanitize_text(parsed))
    return NormalizedOutput(content=json.dumps(parsed))


def extract_structured(raw: Optional[str]) -> Optional[Any]:
    """Pull a JSON object or array out of provider output, or return None."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None

    for source in _structured_sources(trimmed):
        found = _search_structured(source)
        if found is not None:
            return found
    return None


def extract_provider_session_id(raw: Optional[str]) -> Optional[str]:
    """Find the provider-native session id used to resume a conversation."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None

    parsed = _try_parse_json(trimmed)
    if parsed is not _NOT_JSON:
        found = _find_session_id(parsed)
        if found:
            return found

    for line in trimmed.splitlines():
        candidate = line.strip()
        if not candidate.startswith(("{", "[")):
            continue
        value = _try_parse_json(candidate)
        if value is _NOT_JSON:
            continue
        found = _find_session_id(value)
        if found:
            return found
    return None


def extract_last_non_empty_line(text: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """Return the last non-blank line of ``text``, trimmed."""
    if not text:
        return None
    for line in reversed(text.splitlines()):
        stripped = line.strip()
        if stripped:
            if max_length and len(stripped) > max_length:
                return stripped[: max_length - 3] + "..."
            return stripped
    return None


def is_result_envelope(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") == "result"


def _try_parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return _NOT_JSON


def _iter_json_lines(text: str) -> Iterable[Any]:
    for line in text.splitlines():
        candidate = line.strip()
        if not candidate.startswith(("{", "[")):
            continue
        value = _try_parse_json(candidate)
        if value is not _NOT_JSON:
            yield value


def _normalize_blocks(blocks: List[Any]) -> NormalizedOutput:
    parts: List[str] = []
    types: List[str] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        if isinstance(block.get("type"), str):
            types.append(block["type"])
        text = extract_block_text(block)
        if text:
            parts.append(text)
    return NormalizedOutput(
        content=sanitize_text("\n\n".join(parts)),
        metadata={"block_count": len(blocks), "types": types},
    )


def _is_event_stream(events: List[Any], line_count: int) -> bool:
    """True when the JSON lines are provider events rather than snippets inside prose."""
    if not events:
        return False
    if any(isinstance(event, dict) and isinstance(event.get("type"), str) for event in events):
        return True
    return len(events) * 2 > line_count


def _normalize_events(events: List[Any]) -> NormalizedOutput:
    envelope = next((event for event in reversed(events) if is_result_envelope(event)), None)
    if envelope is not None:
        text = extract_block_text(envelope)
        if text:
            return NormalizedOutput(content=sanitize_text(text), metadata=_collect_metadata(envelope))

    blocks: List[Any] = []
    for event in events:
        for block in event if isinstance(event, list) else [event]:
            if isinstance(block, dict) and block.get("type") in NON_ANSWER_EVENT_TYPES:
                continue
            blocks.append(block)

    normalized = _normalize_blocks(blocks)
    if not normalized.content and envelope is not None:
        return NormalizedOutput(
            content=_result_fallback(envelope), metadata=_collect_metadata(envelope)
        )
    return normalized


def _normalize_object(record: Dict[str, Any]) -> NormalizedOutput:
    metadata = _collect_metadata(record)
    content = extract_block_text(record)

    if not content and record.get("type") == "result":
        content = _result_fallback(record)
    elif not content:
        content = json.dumps(record, indent=2, ensure_ascii=False)

    return NormalizedOutput(content=sanitize_text(content), metadata=metadata)


def _collect_metadata(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    metadata = {key: record[key] for key in _METADATA_FIELDS if record.get(key)}
    return metadata or None


def _result_fallback(record: Dict[str, Any]) -> str:
    subtype = record.get("subtype")
    if subtype == "success":
        return RESULT_SUCCESS_MESSAGE
    if subtype == "error":
        error = record.get("error")
        return f"{RESULT_ERROR_MESSAGE} {error}" if error else RESULT_ERROR_MESSAGE
    return RESULT_EMPTY_MESSAGE


def _structured_sources(trimmed: str) -> List[str]:
    sources: List[str] = []
    envelope = _try_parse_json(trimmed)
    if is_result_envelope(envelope) and isinstance(envelope.get("result"), str):
        sources.append(envelope["result"].strip())
    else:
        sources.append(trimmed)

    normalized = normalize(trimmed).content.strip()
    if normalized and normalized not in sources:
        sources.append(normalized)
    return sources


def _search_structured(text: str) -> Optional[Any]:
    direct = _try_parse_json(text)
    if _is_container(direct):
        return direct

    for match in CODE_FENCE_PATTERN.finditer(text):
        value = _try_parse_json(match.group(1).strip())
        if _is_container(value):
            return value

    for pattern in (PROJECT_OBJECT_PATTERN, ANY_OBJECT_PATTERN, ANY_ARRAY_PATTERN):
        match = pattern.search(text)
        if not match:
            continue
        value = _try_parse_json(match.group(1))
        if _is_container(value):
            return value
    return None


def _is_container(value: Any) -> bool:
    return isinstance(value, (dict, list)) and not is_result_envelope(value)


def _find_session_id(value: Any) -> Optional[str]:
    if isinstance(value, list):
        for item in value:
            found = _find_session_id(item)
            if found:
                return found
        return None

    if not isinstance(value, dict):
        return None

    for key in ("session_id", "sessionId"):
        candidate = value.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()

    session = value.get("session")
    if isinstance(session, dict):
        candidate = session.get("id")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()

    for nested in value.values():
        found = _find_session_id(nested)
        if found:
            return found
    return None
