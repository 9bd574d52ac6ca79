"""Tests for marker resolution and comparison."""

from __future__ import annotations

import time
from pathlib import Path

import pytest
import regex

from healing_pipeline.markers import (
    INVALID_TARGET_VALUE,
    REGEX_INVALID,
    REGEX_TIMED_OUT,
    REGEX_TIMEOUT_SECONDS,
    RegexTimeoutError,
    compare,
    evaluate_markers,
    resolve_json_path,
    search_with_timeout,
)
from healing_pipeline.schemas import CompareOperator, Marker, MarkerType

pytestmark = pytest.mark.unit

Op = CompareOperator


def _marker(marker_type: MarkerType, source: str, target: str, operator: Op = Op.EQUALS) -> Marker:
    return Marker(name="m", type=marker_type, source=source, operator=operator, target_value=target)


def _evaluate(marker: Marker, data: dict[str, str], target: str | Path = ".") -> tuple[bool, str]:
    (result,) = evaluate_markers([marker], data, target)
    return result.passed, result.actual_value


class TestCompare:
    @pytest.mark.parametrize(
        "actual, expected, operator, outcome",
        [
            ("10", "9", Op.GREATER_THAN, True),
            ("10", "9", Op.LESS_THAN, False),
            ("1,234", "1234", Op.EQUALS, True),
            ("3.00001", "3", Op.EQUALS, True),
            ("3.001", "3", Op.EQUALS, False),
            ("3.001", "3", Op.NOT_EQUALS, True),
            ("5", "5", Op.GREATER_THAN_OR_EQUAL, True),
            ("5", "5", Op.LESS_THAN_OR_EQUAL, True),
            ("0", "0.0", Op.EQUALS, True),
        ],
    )
    def test_numeric(self, actual, expected, operator, outcome):
        assert compare(actual, expected, operator) is outcome

    def test_numeric_not_lexicographic(self):
        assert compare("10", "9", Op.GREATER_THAN)
        assert not compare("abc10", "abc9", Op.GREATER_THAN)

    def test_string_comparison_is_case_insensitive(self):
        assert compare("SUCCESS", "success", Op.EQUALS)
        assert compare("beta", "Alpha", Op.GREATER_THAN)
        assert compare("ok", "fail", Op.NOT_EQUALS)

    def test_contains(self):
        assert compare("Build SUCCEEDED in 3s", "succeeded", Op.CONTAINS)
        assert not compare("Build failed", "succeeded", Op.CONTAINS)
        assert compare("12345", "234", Op.CONTAINS)

    def test_none_never_passes(self):
        for operator in Op:
            assert compare(None, "x", operator) is False

    def test_underscore_digits_are_not_numbers(self):
        assert not compare("1_000", "1000", Op.EQUALS)


class TestJsonPath:
    DOC = '{"summary": {"total": 10, "ratio": 7.50, "ok": true, "none": null}, "items": [{"score": 3}, {"score": 9}]}'

    def test_nested_number_keeps_original_text(self):
        assert resolve_json_path(self.DOC, "summary.ratio") == "7.50"

    def test_array_index(self):
        assert resolve_json_path(self.DOC, "items[1].score") == "9"

    def test_boolean(self):
        assert resolve_json_path(self.DOC, "summary.ok") == "true"

    def test_string_verbatim(self):
        assert resolve_json_path('{"state": "Green"}', "state") == "Green"

    def test_container_is_compact_json(self):
        assert resolve_json_path(self.DOC, "items[0]") == '{"score":3}'
        assert resolve_json_path('{"a": [1, 2.0]}', "a") == "[1,2.0]"

    def test_root_array(self):
        assert resolve_json_path('[{"id": "x"}]', "[0].id") == "x"

    @pytest.mark.parametrize(
        "path",
        ["summary.missing", "items[5].score", "items[-1]", "items[x]", "summary[0]", "summary.none", "items.score"],
    )
    def test_unresolvable(self, path):
        assert resolve_json_path(self.DOC, path) is None

    def test_invalid_json_or_empty_input(self):
        assert resolve_json_path("not json", "a") is None
        assert resolve_json_path("", "a") is None
        assert resolve_json_path(self.DOC, "") is None


# Nested quantifiers plus a backreference: exponential backtracking that
# cannot be memoised away.
CATASTROPHIC_PATTERN = r"(a+)+\1$"
CATASTROPHIC_TEXT = "a" * 40 + "b"


class TestRegexSearch:
    def test_returns_match(self):
        match = search_with_timeout(r"(\d+)", "abc 12")
        assert match is not None and match.group(1) == "12"

    def test_invalid_pattern_raises_regex_error(self):
        with pytest.raises(regex.error):
            search_with_timeout("(", "text")

    def test_catastrophic_pattern_stops_at_deadline(self):
        started = time.monotonic()
        with pytest.raises(RegexTimeoutError):
            search_with_timeout(CATASTROPHIC_PATTERN, CATASTROPHIC_TEXT, timeout_seconds=0.2)
        assert time.monotonic() - started < 3.0


class TestEvaluateMarkers:
    def test_exit_code_prefers_recorded_exit_code(self):
        data = {"build": "Build succeeded", "exitcode:build": "0"}
        assert _evaluate(_marker(MarkerType.EXIT_CODE, "build", "0"), data) == (True, "0")

    def test_exit_code_from_failed_step(self):
        passed, actual = _evaluate(_marker(MarkerType.EXIT_CODE, "build", "0"), {"exitcode:build": "1"})
        assert not passed
        assert actual == "1"

    def test_exit_code_from_numeric_output(self):
        assert _evaluate(_marker(MarkerType.EXIT_CODE, "code", "3"), {"code": " 3\n"}) == (True, "3")

    def test_exit_code_text_output_counts_as_success(self):
        assert _evaluate(_marker(MarkerType.EXIT_CODE, "log", "0"), {"log": "all good"}) == (True, "0")

    def test_missing_source(self):
        passed, actual = _evaluate(_marker(MarkerType.EXIT_CODE, "build", "0"), {})
        assert not passed
        assert actual == "(source 'build' not found in step data)"

    def test_json_path_marker(self):
        data = {"report": '{"tests": {"failed": 0}}'}
        marker = _marker(MarkerType.JSON_PATH, "report:tests.failed", "0")
        assert _evaluate(marker, data) == (True, "0")

    def test_json_path_without_path_separator(self):
        passed, actual = _evaluate(_marker(MarkerType.JSON_PATH, "report", "0"), {"report": "{}"})
        assert not passed
        assert actual == "(source 'report' not found in step data)"

    def test_regex_marker_uses_first_group(self):
        data = {"log": "Tests: 12 passed, 0 failed"}
        marker = _marker(MarkerType.REGEX, r"log:(\d+) failed", "0")
        assert _evaluate(marker, data) == (True, "0")

    def test_regex_marker_pattern_may_contain_colons(self):
        data = {"log": "Coverage: 88%"}
        marker = _marker(MarkerType.REGEX, r"log:Coverage: \d+", "Coverage: 88", Op.EQUALS)
        assert _evaluate(marker, data) == (True, "Coverage: 88")

    def test_regex_no_match_is_not_found(self):
        passed, actual = _evaluate(_marker(MarkerType.REGEX, r"log:(\d+) failed", "0"), {"log": "nothing"})
        assert not passed
        assert "not found" in actual

    def test_invalid_regex(self):
        assert _evaluate(_marker(MarkerType.REGEX, "log:(", "x"), {"log": "text"}) == (False, REGEX_INVALID)

    @pytest.mark.slow
    def test_regex_timeout(self):
        marker = _marker(MarkerType.REGEX, f"log:{CATASTROPHIC_PATTERN}", "x")
        started = time.monotonic()

        result = _evaluate(marker, {"log": CATASTROPHIC_TEXT})

        assert result == (False, REGEX_TIMED_OUT)
        assert time.monotonic() - started < REGEX_TIMEOUT_SECONDS + 1.5

    def test_file_exists(self, tmp_path: Path):
        (tmp_path / "bin").mkdir()
        (tmp_path / "bin" / "app.dll").write_bytes(b"")
        assert _evaluate(_marker(MarkerType.FILE_EXISTS, "bin/app.dll", "true"), {}, tmp_path) == (True, "true")
        assert _evaluate(_marker(MarkerType.FILE_EXISTS, "bin/other.dll", "true"), {}, tmp_path) == (False, "false")

    def test_file_exists_ignores_directories(self, tmp_path: Path):
        (tmp_path / "bin").mkdir()
        assert _evaluate(_marker(MarkerType.FILE_EXISTS, "bin", "true"), {}, tmp_path) == (False, "false")

    def test_empty_target_value_fails_without_resolving(self):
        marker = _marker(MarkerType.EXIT_CODE, "build", "")
        assert _evaluate(marker, {"exitcode:build": "0"}) == (False, INVALID_TARGET_VALUE)

    def test_results_follow_marker_order_and_copy_metadata(self):
        markers = [
            Marker(id="m1", name="first", source="a", target_value="0"),
            Marker(id="m2", name="second", source="b", target_value="0", operator=Op.NOT_EQUALS),
        ]
        results = evaluate_markers(markers, {"exitcode:a": "0", "exitcode:b": "0"}, ".")
        assert [r.marker_id for r in results] == ["m1", "m2"]
        assert [r.passed for r in results] == [True, False]
        assert results[1].operator == Op.NOT_EQUALS
        assert results[1].expected_value == "0"
