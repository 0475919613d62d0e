"""
Structured response parsing for Text Analysis Provider output.

This is the only place that knows how to dig JSON out of model text:
strip code fences, take the first well-formed JSON object, check required
keys, normalize the priority field.
"""

import json
from typing import Any

from core.errors import ProviderError

PRIORITY_ALIASES = {
    "alta": "alta",
    "high": "alta",
    "media": "media",
    "medium": "media",
    "baja": "baja",
    "low": "baja",
}
PRIORITY_FIELDS = ("priority", "visit_priority")


def strip_code_fences(content: str) -> str:
    """Remove markdown code fence markers (```json / ```) from model output."""
    return content.replace("```json", "").replace("```JSON", "").replace("```", "").strip()


def extract_first_json_object(content: str) -> dict[str, Any]:
    """Return the first JSON object that decodes cleanly from the text."""
    decoder = json.JSONDecoder()
    start = content.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(content, start)
        except json.JSONDecodeError:
            start = content.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = content.find("{", start + 1)
    raise ProviderError("No JSON object found in provider response")


def normalize_priority(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return PRIORITY_ALIASES.get(value.strip().lower(), value)


def parse_structured_response(content: str, required_keys: tuple[str, ...]) -> dict[str, Any]:
    """Raw provider text -> validated payload. Raises ProviderError when anything is off."""
    if not content or not content.strip():
        raise ProviderError("Empty provider response")
    payload = extract_first_json_object(strip_code_fences(content))

    missing = [key for key in required_keys if key not in payload or payload[key] is None]
    if missing:
        raise ProviderError(
            f"Provider response missing required keys: {', '.join(missing)}",
            {"missing_keys": missing},
        )

    for field_name in PRIORITY_FIELDS:
        if field_name in payload:
            payload[field_name] = normalize_priority(payload[field_name])
    return payload
