"""
Response Validator - turns completion text into typed extraction results.

LLM output is internal data: it is cleaned, parsed and validated here before
anything downstream touches it.

    raw text -> extract_json_text -> json.loads -> List[MessageAnalysis]

Any violation raises SchemaError carrying the offending raw text, which the
orchestrator answers with a single repair call.
"""

import json
import logging
import re
from typing import List

from pydantic import TypeAdapter, ValidationError

from magic_order.error_handler import SchemaError
from magic_order.models import MessageAnalysis


logger = logging.getLogger(__name__)


RE_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
RE_FENCE_MARKER = re.compile(r"```(?:json)?", re.IGNORECASE)
RE_NEWLINES = re.compile(r"[\r\n]+")
RE_OBJECT_ARRAY = re.compile(r"\[\s*\{[\s\S]*\}\s*\]")

TYPOGRAPHIC_QUOTES = {
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
}

_ANALYSES = TypeAdapter(List[MessageAnalysis])


def _strip_fences(text: str) -> str:
    json_text = (text or "").strip()
    if "```" in json_text:
        match = RE_FENCED_BLOCK.search(json_text)
        if match and match.group(1):
            return match.group(1).strip()
        return RE_FENCE_MARKER.sub("", json_text).strip()
    return json_text


def _array_span(text: str) -> str:
    if text.startswith("[") and text.endswith("]"):
        return text
    match = RE_OBJECT_ARRAY.search(text)
    return match.group(0) if match else text


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def extract_json_text(text: str) -> str:
    """
    Clean a completion so it can be fed to json.loads.

    Fences are always stripped (keeping what is inside a fenced block). Text
    that parses after that is returned as is, so curly quotes inside string
    values survive. Otherwise, in order until something parses:
    - keep the first `[ {...} ]` span when the text is not a bare array
    - replace curly quotes with straight ones and collapse line breaks
    """
    json_text = _strip_fences(text)
    if not json_text or _parses(json_text):
        return json_text

    span = _array_span(json_text)
    if _parses(span):
        return span

    normalized = json_text
    for curly, straight in TYPOGRAPHIC_QUOTES.items():
        normalized = normalized.replace(curly, straight)
    normalized = RE_NEWLINES.sub(" ", normalized).strip()
    return _array_span(normalized)


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def validate_response(raw: str) -> List[MessageAnalysis]:
    """
    Parse completion text into client groups.

    An empty array is valid and means no orders were found.

    Raises:
        SchemaError: text is not JSON, not an array, or an element does not
            match the client/items schema.
    """
    json_text = extract_json_text(raw)
    if not json_text:
        raise SchemaError("Empty response", raw_text=raw or "")

    try:
        data = json.loads(json_text)
    except json.JSONDecodeError as e:
        logger.warning(f"[VALIDATOR] Invalid JSON: {e}")
        raise SchemaError(f"Invalid JSON: {e}", raw_text=raw) from e

    if not isinstance(data, list):
        logger.warning(f"[VALIDATOR] Expected an array, got {type(data).__name__}")
        raise SchemaError(f"Expected a JSON array, got {type(data).__name__}", raw_text=raw)

    try:
        results = _ANALYSES.validate_python(data)
    except ValidationError as e:
        logger.warning(f"[VALIDATOR] Schema mismatch: {_describe(e)}")
        raise SchemaError(f"Schema mismatch at {_describe(e)}", raw_text=raw) from e

    logger.info(
        f"[VALIDATOR] {len(results)} client groups, "
        f"{sum(len(r.items) for r in results)} items"
    )
    return results
