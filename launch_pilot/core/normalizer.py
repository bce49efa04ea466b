"""
AI response normalization.

Recovers structured JSON data from free-form AI completions that were asked
to return only JSON but often wrap it in prose or code fences, or truncate it.

Fallback chain, each tier attempted only if the prior one fails:
1. Direct parse - strict parse of the whole string
2. Substring extraction - first [...] or {...} span
3. Heuristic repair - fixed list of string repair passes
4. Truncation recovery - longest parseable prefix, flagged as partial
5. Unrecoverable - typed failure result, never an exception
"""

import json
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Iterator, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json|JSON)?")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_BARE_KEY = re.compile(r"([{,]\s*)(\w+)\s*:")
_BARE_SCALAR = re.compile(r":\s*([^\s\",\[\{][^,\}\]]*)")
_LITERAL = re.compile(r"^(true|false|null|-?\d+(\.\d+)?([eE][+-]?\d+)?)$")

# Upper bound on candidate cut points tried during truncation recovery
MAX_TRUNCATION_ATTEMPTS = 200


class ParseTier(Enum):
    """Tier of the fallback chain that produced a result."""
    DIRECT = "direct"
    EXTRACTED = "extracted"
    REPAIRED = "repaired"
    TRUNCATED = "truncated"
    UNRECOVERABLE = "unrecoverable"


class UnrecoverableResponse(ValueError):
    """Raised by NormalizationResult.unwrap() when nothing could be parsed."""

    def __init__(self, message: str, raw: str, errors: Tuple[str, ...]):
        super().__init__(message)
        self.raw = raw
        self.errors = errors


@dataclass(frozen=True)
class NormalizationResult:
    """Outcome of normalizing a raw AI completion.

    `value` is only meaningful when `ok` is true. `partial` marks results
    recovered from a truncated response. `errors` keeps the parse error of
    every tier that was attempted and failed.
    """
    value: Any
    tier: ParseTier
    raw: str
    partial: bool = False
    errors: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.tier != ParseTier.UNRECOVERABLE

    def unwrap(self) -> Any:
        """Return the parsed value or raise UnrecoverableResponse."""
        if not self.ok:
            raise UnrecoverableResponse(
                "AI response was not valid JSON", self.raw, self.errors
            )
        return self.value


# --- Repair passes -----------------------------------------------------------
# Each pass is a pure str -> str function. They run in REPAIR_PASSES order.

def strip_code_fences(text: str) -> str:
    """Remove Markdown code fence markers."""
    return _CODE_FENCE.sub("", text).strip()


def trim_to_json(text: str) -> str:
    """Drop text before the first bracket and after the last closing bracket."""
    start = _first_opener(text)
    if start < 0:
        return ""
    text = text[start:]
    end = max(text.rfind("}"), text.rfind("]"))
    return text[:end + 1].strip()


def _first_opener(text: str) -> int:
    """Index of the first '{' or '[', or -1."""
    found = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    return min(found) if found else -1


def strip_trailing_commas(text: str) -> str:
    """Remove commas directly before a closing brace or bracket."""
    return _TRAILING_COMMA.sub(r"\1", text)


def quote_bare_keys(text: str) -> str:
    """Quote unquoted object keys: {key: 1} -> {"key": 1}."""
    return _BARE_KEY.sub(r'\1"\2":', text)


def quote_bare_scalars(text: str) -> str:
    """Quote unquoted values that are not boolean, null or numeric literals.

    Works on raw text, so values containing ':' inside strings can be
    mangled. Only used after strict parsing has already failed.
    """
    def _quote(match: "re.Match[str]") -> str:
        value = match.group(1).strip()
        if _LITERAL.match(value):
            return match.group(0)
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f': "{escaped}"'

    return _BARE_SCALAR.sub(_quote, text)


REPAIR_PASSES: Tuple[Callable[[str], str], ...] = (
    trim_to_json,
    strip_trailing_commas,
    quote_bare_keys,
    quote_bare_scalars,
)


# --- Tiers -------------------------------------------------------------------

def parse_direct(text: str) -> Any:
    """Tier 1: strict parse of the whole string."""
    return json.loads(text)


def extract_json_span(text: str) -> Optional[str]:
    """Locate the first [...] or {...} span, ignoring code fences.

    The span runs from the first opener that has a matching closer type
    somewhere after it to the last such closer.
    """
    text = strip_code_fences(text)
    last_close = {"[": text.rfind("]"), "{": text.rfind("}")}
    for index, char in enumerate(text):
        if char in last_close:
            end = last_close[char]
            if end > index:
                return text[index:end + 1]
            if all(close < index for close in last_close.values()):
                break
    return None


def parse_extracted(text: str) -> Any:
    """Tier 2: parse the first bracketed span of the string."""
    span = extract_json_span(text)
    if span is None:
        raise ValueError("No JSON found in response")
    return json.loads(span)


def repair(text: str) -> str:
    """Apply every repair pass in order."""
    for repair_pass in REPAIR_PASSES:
        text = repair_pass(text)
    return text


def parse_repaired(text: str) -> Any:
    """Tier 3: parse after heuristic repair."""
    repaired = repair(strip_code_fences(text))
    if not repaired:
        raise ValueError("Nothing left after repair")
    return json.loads(repaired)


def _truncation_candidates(text: str, limit: int = MAX_TRUNCATION_ATTEMPTS) -> Iterator[str]:
    """Yield closed-off prefixes of a truncated JSON document, longest first.

    Cut points are the ends of complete values inside containers: before
    each separating comma and after each closing bracket. Only the last
    `limit` cut points are kept; prefixes are sliced as they are yielded.
    """
    closers = {"{": "}", "[": "]"}
    cuts: Deque[Tuple[int, str]] = deque(maxlen=limit)
    stack: List[str] = []
    in_string = False
    escaped = False

    for index, char in enumerate(text):
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
        elif char in closers:
            stack.append(closers[char])
        elif char in "}]":
            if not stack or stack[-1] != char:
                break
            stack.pop()
            cuts.append((index + 1, "".join(reversed(stack))))
            if not stack:
                break
        elif char == "," and stack:
            cuts.append((index, "".join(reversed(stack))))

    for end, closing in reversed(cuts):
        yield text[:end] + closing


def parse_truncated(text: str) -> Any:
    """Tier 4: recover the longest parseable prefix of a truncated response.

    Only the noise before the first bracket is dropped; the cut-off tail
    is what the candidates close off.
    """
    cleaned = strip_code_fences(text)
    start = _first_opener(cleaned)
    if start < 0:
        raise ValueError("No JSON container found in response")
    cleaned = cleaned[start:]

    decoder = json.JSONDecoder()
    try:
        value, _ = decoder.raw_decode(cleaned)
        return value
    except json.JSONDecodeError:
        pass

    for candidate in _truncation_candidates(cleaned):
        try:
            value = json.loads(strip_trailing_commas(candidate))
        except json.JSONDecodeError:
            continue
        if isinstance(value, (dict, list)):
            return value
    raise ValueError("No parseable prefix found")


_CHAIN: Tuple[Tuple[ParseTier, Callable[[str], Any]], ...] = (
    (ParseTier.DIRECT, parse_direct),
    (ParseTier.EXTRACTED, parse_extracted),
    (ParseTier.REPAIRED, parse_repaired),
    (ParseTier.TRUNCATED, parse_truncated),
)


def normalize(raw: Optional[str], allow_partial: bool = True) -> NormalizationResult:
    """Normalize a raw AI completion into structured data.

    Never raises. A total failure is reported as a result with
    tier UNRECOVERABLE.

    Args:
        raw: Raw completion text
        allow_partial: Whether truncation recovery may be used

    Returns:
        NormalizationResult describing the parsed value and the tier used
    """
    if not isinstance(raw, str) or not raw.strip():
        return NormalizationResult(
            value=None,
            tier=ParseTier.UNRECOVERABLE,
            raw=raw if isinstance(raw, str) else "",
            errors=("empty response",),
        )

    errors = []
    for tier, parser in _CHAIN:
        if tier == ParseTier.TRUNCATED and not allow_partial:
            continue
        try:
            value = parser(raw)
        except (ValueError, RecursionError) as e:
            # json.JSONDecodeError is a ValueError subclass
            errors.append(f"{tier.value}: {e}")
            continue
        if tier != ParseTier.DIRECT:
            logger.info("Recovered AI response JSON via %s tier", tier.value)
        return NormalizationResult(
            value=value,
            tier=tier,
            raw=raw,
            partial=tier == ParseTier.TRUNCATED,
            errors=tuple(errors),
        )

    logger.warning("Failed to parse AI response as JSON: %s", "; ".join(errors))
    return NormalizationResult(
        value=None,
        tier=ParseTier.UNRECOVERABLE,
        raw=raw,
        errors=tuple(errors),
    )


def normalize_or_fallback(
    raw: Optional[str],
    fallback: Union[Any, Callable[[], Any]],
    allow_partial: bool = True
) -> Any:
    """Return the parsed value, or the fallback when nothing could be parsed.

    Args:
        raw: Raw completion text
        fallback: Value to return, or a zero-argument callable producing it
        allow_partial: Whether truncation recovery may be used
    """
    result = normalize(raw, allow_partial=allow_partial)
    if result.ok:
        return result.value
    return fallback() if callable(fallback) else fallback


def as_list(value: Any) -> List[Any]:
    """Wrap a single parsed object in a list; lists pass through."""
    if value is None:
        return []
    return value if isinstance(value, list) else [value]
