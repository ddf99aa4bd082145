"""Transcript trimming and phase-output parsing for summarization.

WHY: LLM replies wrap the requested JSON in prose or code fences, and a
greedy "{ ... }" regex breaks as soon as the reply contains two objects or
a brace inside a string. Each phase's output also has to have the shape
the consolidation prompt and the Notion export rely on.

HOW: extract_first_json() scans for the first balanced top-level object
with a string-aware brace counter and json.loads it. parse_phase_output()
then validates against the phase's JSON Schema with jsonschema.validate.
trim_transcript() keeps the tail of over-long transcripts.

RULES:
- No parseable object, or a schema mismatch, raises PhaseError
- phase1 key_points beyond MAX_KEY_POINTS are dropped after validation
- Extra keys in model output are tolerated
- Trimming keeps the LAST max_tokens * CHARS_PER_TOKEN characters
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import jsonschema

from mtglog.config import CHARS_PER_TOKEN, MAX_KEY_POINTS, MAX_TRANSCRIPT_TOKENS
from mtglog.errors import PhaseError

# ---------------------------------------------------------------------------
# Phase output schemas
# ---------------------------------------------------------------------------

_TITLED_ITEM = {
    "type": "object",
    "required": ["title", "summary"],
    "properties": {
        "title": {"type": "string"},
        "summary": {"type": "string"},
    },
}

_SPEAKER_ITEM = {
    "type": "object",
    "required": ["name", "summary"],
    "properties": {
        "name": {"type": "string"},
        "summary": {"type": "string"},
    },
}

PHASE_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "phase1": {
        "type": "object",
        "required": ["key_points"],
        "properties": {
            "key_points": {
                "type": "array",
                "items": {"type": "string"},
            },
        },
    },
    "phase2": {
        "type": "object",
        "required": ["sections"],
        "properties": {"sections": {"type": "array", "items": _TITLED_ITEM}},
    },
    "phase3": {
        "type": "object",
        "required": ["speakers"],
        "properties": {"speakers": {"type": "array", "items": _SPEAKER_ITEM}},
    },
}


def trim_transcript(
    transcript: str,
    max_tokens: int = MAX_TRANSCRIPT_TOKENS,
) -> str:
    """Keep the tail of a transcript that exceeds the token budget."""
    limit = max_tokens * CHARS_PER_TOKEN
    if len(transcript) <= limit:
        return transcript
    return transcript[-limit:]


def _balanced_object_end(text: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def extract_first_json(text: str) -> Optional[Dict[str, Any]]:
    """Return the first parseable top-level JSON object embedded in text.

    WHY: Models answer "Here is the result: {...} Hope this helps" or use
    ```json fences. Only the object matters.

    HOW: For each '{', find its balanced closing brace (ignoring braces in
    string literals) and try json.loads on that slice. The first slice that
    parses to a dict wins.

    RULES:
    - Returns None when no candidate parses
    - Non-object JSON (arrays, numbers) is skipped
    """
    start = text.find("{")
    while start != -1:
        end = _balanced_object_end(text, start)
        if end is not None:
            try:
                value = json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                value = None
            if isinstance(value, dict):
                return value
        start = text.find("{", start + 1)
    return None


def parse_phase_output(phase: str, raw: str) -> Dict[str, Any]:
    """Extract and validate one phase's JSON object, or raise PhaseError."""
    value = extract_first_json(raw or "")
    if value is None:
        raise PhaseError(phase, "JSON not found in model output")
    try:
        jsonschema.validate(instance=value, schema=PHASE_SCHEMAS[phase])
    except jsonschema.ValidationError as exc:
        raise PhaseError(phase, f"unexpected JSON shape: {exc.message}") from exc
    if phase == "phase1":
        value["key_points"] = value["key_points"][:MAX_KEY_POINTS]
    return value
