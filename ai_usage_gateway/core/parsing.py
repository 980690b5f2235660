"""
Structured-output extraction from free-text model responses.

Models are asked for JSON but often wrap it in prose or markdown fences.
Extraction runs an ordered chain of pure strategies; the first one that
yields a mapping containing the required keys wins, otherwise the caller's
default is returned.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog

from .errors import ParseError

logger = structlog.get_logger(__name__)


class ParseStrategy(Enum):
    """Strategy that produced a parse result."""
    DIRECT = "direct"
    FENCED_BLOCK = "fenced_block"
    REGEX = "regex"
    MANUAL_FIELDS = "manual_fields"
    DEFAULT = "default"


@dataclass(frozen=True)
class ParseOutcome:
    value: Dict[str, Any]
    strategy: ParseStrategy

    @property
    def recovered(self) -> bool:
        """True when the value came from the model, not the default."""
        return self.strategy != ParseStrategy.DEFAULT


_FENCE_OPEN = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\u0000-\u0008\u000b\u000c\u000e-\u001f\u007f-\u009f]")
_OBJECT_BLOCK = re.compile(r"\{[\s\S]*\}")


def _loads_mapping(text: str) -> Optional[Dict[str, Any]]:
    try:
        # strict=False tolerates raw newlines inside string values.
        parsed = json.loads(text, strict=False)
    except (ValueError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _has_required(value: Optional[Mapping[str, Any]], required: Sequence[str]) -> bool:
    return value is not None and all(value.get(key) not in (None, "") for key in required)


def direct_parse(text: str, required: Sequence[str], fields: Sequence[str]) -> Optional[Dict[str, Any]]:
    """The whole response is JSON."""
    parsed = _loads_mapping(text.strip())
    return parsed if _has_required(parsed, required) else None


def fenced_block_strip(text: str, required: Sequence[str], fields: Sequence[str]) -> Optional[Dict[str, Any]]:
    """Remove markdown fences and anything outside the outermost braces."""
    cleaned = _FENCE_OPEN.sub("", text).replace("```", "")
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    parsed = _loads_mapping(cleaned[start:end + 1])
    return parsed if _has_required(parsed, required) else None


def regex_extract(text: str, required: Sequence[str], fields: Sequence[str]) -> Optional[Dict[str, Any]]:
    """Find a flat ``{...}`` block mentioning a required key, then any block."""
    patterns: List[re.Pattern] = []
    if required:
        key = re.escape(required[0])
        patterns.append(re.compile(r'\{[^{}]*"' + key + r'"[^{}]*\}'))
        patterns.append(re.compile(r'\{[\s\S]*?"' + key + r'"[\s\S]*?\}'))
    patterns.append(_OBJECT_BLOCK)

    for pattern in patterns:
        for match in pattern.finditer(text):
            candidate = re.sub(r"\s+", " ", match.group(0)).strip()
            parsed = _loads_mapping(candidate)
            if _has_required(parsed, required):
                return parsed
    return None


def _field_pattern(name: str) -> re.Pattern:
    return re.compile(
        r'"' + re.escape(name) + r'"\s*:\s*(?:"((?:[^"\\]|\\.)*)"|(null)|(true|false)|(-?\d+(?:\.\d+)?))',
        re.IGNORECASE,
    )


def manual_field_extract(text: str, required: Sequence[str], fields: Sequence[str]) -> Optional[Dict[str, Any]]:
    """Pull scalar ``"name": value`` pairs out one by one."""
    result: Dict[str, Any] = {}
    for name in fields:
        match = _field_pattern(name).search(text)
        if not match:
            continue
        string_value, null_value, bool_value, number_value = match.groups()
        if string_value is not None:
            try:
                result[name] = json.loads(f'"{string_value}"')
            except ValueError:
                result[name] = string_value
        elif null_value is not None:
            result[name] = None
        elif bool_value is not None:
            result[name] = bool_value.lower() == "true"
        else:
            result[name] = float(number_value) if "." in number_value else int(number_value)
    if not result or not _has_required(result, required):
        return None
    return result


Strategy = Callable[[str, Sequence[str], Sequence[str]], Optional[Dict[str, Any]]]

PARSE_CHAIN: Sequence[tuple] = (
    (ParseStrategy.DIRECT, direct_parse),
    (ParseStrategy.FENCED_BLOCK, fenced_block_strip),
    (ParseStrategy.REGEX, regex_extract),
    (ParseStrategy.MANUAL_FIELDS, manual_field_extract),
)


def parse_model_json(
    text: Optional[str],
    required: Sequence[str] = (),
    fields: Sequence[str] = (),
    default: Optional[Mapping[str, Any]] = None,
) -> ParseOutcome:
    """Extract a JSON object from a model response.

    Args:
        text: Raw model output
        required: Keys that must be present and non-empty for a match
        fields: Scalar keys the manual field extractor looks for
        default: Value returned when every strategy fails

    Returns:
        ParseOutcome with the value and the strategy that produced it
    """
    fallback = dict(default or {})
    if not text or not text.strip():
        logger.warning("model_output_empty")
        return ParseOutcome(value=fallback, strategy=ParseStrategy.DEFAULT)

    for strategy, extract in PARSE_CHAIN:
        value = extract(text, required, fields)
        if value is not None:
            if strategy != ParseStrategy.DIRECT:
                logger.debug("model_output_recovered", strategy=strategy.value)
            return ParseOutcome(value=value, strategy=strategy)

    logger.warning("model_output_unparseable", preview=text[:200])
    return ParseOutcome(value=fallback, strategy=ParseStrategy.DEFAULT)


def parse_model_json_strict(
    text: Optional[str],
    required: Sequence[str] = (),
    fields: Sequence[str] = (),
) -> Dict[str, Any]:
    """Like ``parse_model_json`` but raises ParseError instead of defaulting."""
    outcome = parse_model_json(text, required, fields)
    if not outcome.recovered:
        raise ParseError("Model output is not valid JSON for the expected structure", raw_text=text or "")
    return outcome.value
