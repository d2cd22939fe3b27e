import json
import logging
from typing import Any, Dict, Optional

from jarvis_voice.app.services.errors import ParseError

logger = logging.getLogger(__name__)

FINAL_KEY = "text"
PARTIAL_KEY = "partial"
RESULT_KEY = "result"


def parse_hypothesis(hypothesis: str) -> Dict[str, Any]:
    """Decode a JSON hypothesis object.

    Raises:
        ParseError: The payload is not a JSON object.
    """
    try:
        data = json.loads(hypothesis)
    except json.JSONDecodeError as e:
        raise ParseError(f"Failed to parse JSON hypothesis: {hypothesis}") from e
    if not isinstance(data, dict):
        raise ParseError(f"Hypothesis is not a JSON object: {hypothesis}")
    return data


def _non_blank(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else json.dumps(value)
    text = text.strip()
    return text or None


def extract_hypothesis_text(hypothesis: Optional[str], preferred_key: str = FINAL_KEY) -> str:
    """Extract recognized text from a recognizer hypothesis payload.

    Lookup order: ``preferred_key``, then the other of ``text``/``partial``, then
    ``result`` when it is neither blank nor an empty list. Payloads that are not
    wrapped in braces are returned trimmed as-is. Malformed JSON is logged and
    yields an empty string.

    Args:
        hypothesis: Raw payload delivered by the recognizer.
        preferred_key: ``text`` for final results, ``partial`` for partial results.

    Returns:
        Extracted text, or empty string.
    """
    if hypothesis is None or not hypothesis.strip():
        return ""

    trimmed = hypothesis.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        logger.warning(f"Hypothesis is not JSON, returning raw: {trimmed}")
        return trimmed

    try:
        data = parse_hypothesis(trimmed)
    except ParseError as e:
        logger.error(str(e))
        return ""

    text = _non_blank(data.get(preferred_key))
    if text:
        return text

    fallback_key = PARTIAL_KEY if preferred_key == FINAL_KEY else FINAL_KEY
    text = _non_blank(data.get(fallback_key))
    if text:
        logger.debug(f"Extracted text using fallback key '{fallback_key}'")
        return text

    text = _non_blank(data.get(RESULT_KEY))
    if text and text != "[]":
        logger.debug("Extracted text using 'result' key")
        return text

    logger.debug(f"Could not find '{preferred_key}' or fallback key in JSON: {trimmed}")
    return ""
