"""Evaluate markers (typed success criteria) against captured step data.

Everything here is a pure function of its inputs apart from the
``file_exists`` check, which looks at the filesystem. Resolution problems
never raise: they turn into a failed :class:`MarkerResult` whose
``actual_value`` explains what went wrong.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import regex

from healing_pipeline.schemas import CompareOperator, Marker, MarkerResult, MarkerType
from healing_pipeline.step_executor import exit_code_key

logger = logging.getLogger(__name__)

EQUALITY_EPSILON = 1e-4
REGEX_TIMEOUT_SECONDS = 5.0

INVALID_TARGET_VALUE = "(invalid marker: empty TargetValue)"
REGEX_TIMED_OUT = "(regex timed out)"
REGEX_INVALID = "(invalid regex pattern)"

_INDEXED_SEGMENT_RE = re.compile(r"^(?P<prop>[^\[\]]*)\[(?P<index>[^\[\]]*)\]$")


class RegexTimeoutError(TimeoutError):
    """A marker pattern did not finish matching within its time budget."""


class _RawNumber(str):
    """JSON number kept in its original textual form (``7.50`` stays ``7.50``)."""


def evaluate_markers(
    markers: Sequence[Marker],
    step_data: Mapping[str, str],
    target_project_path: str | Path,
) -> list[MarkerResult]:
    """Return one :class:`MarkerResult` per marker, in marker order."""
    return [_evaluate_marker(marker, step_data, target_project_path) for marker in markers]


def _evaluate_marker(
    marker: Marker,
    step_data: Mapping[str, str],
    target_project_path: str | Path,
) -> MarkerResult:
    result = MarkerResult(
        marker_id=marker.id,
        marker_name=marker.name,
        expected_value=marker.target_value,
        operator=marker.operator,
    )
    if not marker.target_value:
        result.actual_value = INVALID_TARGET_VALUE
        result.passed = False
        return result

    source = marker.source or ""
    actual = resolve_actual_value(marker.type, source, step_data, target_project_path)
    if actual is None:
        source_key = source.split(":", 1)[0] or "(none)"
        result.actual_value = f"(source '{source_key}' not found in step data)"
    else:
        result.actual_value = actual
    result.passed = compare(actual, marker.target_value, marker.operator)
    return result


def resolve_actual_value(
    marker_type: MarkerType,
    source: str,
    step_data: Mapping[str, str],
    target_project_path: str | Path,
) -> str | None:
    """Resolve the value a marker compares, or ``None`` when it is unavailable."""
    if marker_type == MarkerType.EXIT_CODE:
        recorded = step_data.get(exit_code_key(source))
        if recorded is not None:
            return recorded
        raw = step_data.get(source)
        if raw is None:
            return None
        # An output that is just a number is treated as the exit code; any
        # other stored output means the step ran successfully.
        try:
            int(raw.strip())
        except ValueError:
            return "0"
        return raw.strip()

    if marker_type == MarkerType.JSON_PATH:
        data_key, sep, path = source.partition(":")
        if not sep or not data_key or data_key not in step_data:
            return None
        return resolve_json_path(step_data[data_key], path)

    if marker_type == MarkerType.REGEX:
        data_key, sep, pattern = source.partition(":")
        if not sep or not data_key or data_key not in step_data:
            return None
        try:
            match = search_with_timeout(pattern, step_data[data_key])
        except RegexTimeoutError:
            return REGEX_TIMED_OUT
        except regex.error:
            return REGEX_INVALID
        if match is None:
            return None
        if match.re.groups:
            return match.group(1) or ""
        return match.group(0)

    if marker_type == MarkerType.FILE_EXISTS:
        return "true" if (Path(target_project_path) / source).is_file() else "false"

    return None  # pragma: no cover - exhaustive enum


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------

def _parse_number(text: str) -> float | None:
    """Culture-invariant float parse: ``.`` decimal point, ``,`` group separator."""
    cleaned = (text or "").strip().replace(",", "")
    if not cleaned or "_" in cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def compare(actual: str | None, expected: str, operator: CompareOperator) -> bool:
    """Compare *actual* against *expected*.

    Numeric when both sides parse as numbers (equality within
    :data:`EQUALITY_EPSILON`), otherwise case-insensitive string comparison.
    ``contains`` is always a case-insensitive substring test.
    """
    if actual is None:
        return False

    if operator == CompareOperator.CONTAINS:
        return expected.casefold() in actual.casefold()

    actual_num = _parse_number(actual)
    expected_num = _parse_number(expected)
    if actual_num is not None and expected_num is not None:
        if operator == CompareOperator.EQUALS:
            return math.fabs(actual_num - expected_num) < EQUALITY_EPSILON
        if operator == CompareOperator.NOT_EQUALS:
            return not math.fabs(actual_num - expected_num) < EQUALITY_EPSILON
        if operator == CompareOperator.GREATER_THAN:
            return actual_num > expected_num
        if operator == CompareOperator.GREATER_THAN_OR_EQUAL:
            return actual_num >= expected_num
        if operator == CompareOperator.LESS_THAN:
            return actual_num < expected_num
        if operator == CompareOperator.LESS_THAN_OR_EQUAL:
            return actual_num <= expected_num
        return False

    left = actual.casefold()
    right = expected.casefold()
    if operator == CompareOperator.EQUALS:
        return left == right
    if operator == CompareOperator.NOT_EQUALS:
        return left != right
    if operator == CompareOperator.GREATER_THAN:
        return left > right
    if operator == CompareOperator.GREATER_THAN_OR_EQUAL:
        return left >= right
    if operator == CompareOperator.LESS_THAN:
        return left < right
    if operator == CompareOperator.LESS_THAN_OR_EQUAL:
        return left <= right
    return False


# ---------------------------------------------------------------------------
# Regex with a time budget
# ---------------------------------------------------------------------------

def search_with_timeout(
    pattern: str,
    text: str,
    timeout_seconds: float = REGEX_TIMEOUT_SECONDS,
) -> regex.Match[str] | None:
    """Search *text* for *pattern*, giving up after *timeout_seconds*.

    The ``regex`` engine checks its deadline while backtracking, so a
    catastrophic pattern stops on time. Raises :class:`RegexTimeoutError`
    on timeout; ``regex.error`` from compiling *pattern* propagates.
    """
    compiled = regex.compile(pattern)
    try:
        return compiled.search(text, timeout=timeout_seconds)
    except TimeoutError as exc:
        logger.warning("Marker regex %r exceeded %.1fs; giving up", pattern, timeout_seconds)
        raise RegexTimeoutError(pattern) from exc


# ---------------------------------------------------------------------------
# JSON path
# ---------------------------------------------------------------------------

def resolve_json_path(json_text: str, path: str) -> str | None:
    """Resolve a dot path such as ``results.items[1].score`` inside *json_text*.

    Returns the terminal value as text (strings verbatim, numbers in their
    original form, booleans as ``true``/``false``, containers as compact
    JSON) or ``None`` when anything along the way is missing, of the wrong
    shape, out of range, or an explicit ``null``.
    """
    if not json_text or not json_text.strip() or not path or not path.strip():
        return None
    try:
        element: Any = json.loads(
            json_text,
            parse_int=_RawNumber,
            parse_float=_RawNumber,
            parse_constant=_RawNumber,
        )
    except ValueError:
        return None

    for segment in path.split("."):
        indexed = _INDEXED_SEGMENT_RE.match(segment)
        if indexed is None:
            if not isinstance(element, dict) or segment not in element:
                return None
            element = element[segment]
            continue

        prop = indexed.group("prop")
        if prop:
            if not isinstance(element, dict) or prop not in element:
                return None
            element = element[prop]
        try:
            index = int(indexed.group("index"))
        except ValueError:
            return None
        if not isinstance(element, list) or index < 0 or index >= len(element):
            return None
        element = element[index]

    return _stringify_json_value(element)


def _stringify_json_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, _RawNumber):
        return str.__str__(value)
    if isinstance(value, str):
        return value
    return _dump_compact(value)


def _dump_compact(value: Any) -> str:
    """Serialize containers without re-quoting :class:`_RawNumber` leaves."""
    if isinstance(value, dict):
        items = ",".join(f"{json.dumps(k)}:{_dump_compact(v)}" for k, v in value.items())
        return "{" + items + "}"
    if isinstance(value, list):
        return "[" + ",".join(_dump_compact(v) for v in value) + "]"
    if isinstance(value, _RawNumber):
        return str.__str__(value)
    return json.dumps(value, ensure_ascii=False)
