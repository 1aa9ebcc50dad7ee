from __future__ import annotations

import pytest

from action_runtime.core.errors import (
    EditFileExistsError,
    EditFileNotFoundError,
    EditNoChangesError,
    EditNoMatchError,
    EditOccurrenceMismatchError,
)
from action_runtime.edits import EditFailureTracker, apply_replacement, plan_edit
from action_runtime.edits.replace import build_token_pattern, build_whitespace_tolerant_pattern


def test_exact_replacement() -> None:
    result = apply_replacement("Line 1\nLine 2\nLine 3\n", "Line 2", "Line two")
    assert result.strategy == "exact"
    assert result.occurrence_count == 1
    assert result.applied_content == "Line 1\nLine two\nLine 3\n"


def test_exact_match_wins_over_looser_strategies() -> None:
    result = apply_replacement("foo bar\nfoo  bar\n", "foo bar", "X")
    assert result.strategy == "exact"
    assert result.applied_content == "X\nfoo  bar\n"


def test_whitespace_tolerant_fallback() -> None:
    result = apply_replacement("def f():\n    return  1\n", "return 1", "return 2")
    assert result.strategy == "whitespace-tolerant"
    assert result.applied_content == "def f():\n    return 2\n"


def test_whitespace_tolerant_handles_reindented_blocks() -> None:
    result = apply_replacement("if x:\n        y()\n", "if x:\n    y()", "if z:\n    y()")
    assert result.strategy == "whitespace-tolerant"
    assert result.applied_content == "if z:\n    y()\n"


def test_token_fallback_across_line_breaks() -> None:
    result = apply_replacement("a(\n  b,\n  c)\n", "a( b, c)", "x")
    assert result.strategy == "token-based"
    assert result.applied_content == "x\n"


def test_crlf_files_keep_their_line_endings() -> None:
    result = apply_replacement("one\r\ntwo\r\nthree\r\n", "two\nthree", "2\n3")
    assert result.applied_content == "one\r\n2\r\n3\r\n"


@pytest.mark.parametrize(
    "content,old",
    [("value = 1\n", "1"), ("a   b\n", "a b")],
)
def test_replacement_text_is_literal(content: str, old: str) -> None:
    replacement = r"\g<0>\1$&"
    result = apply_replacement(content, old, replacement)
    assert replacement in result.applied_content


def test_expected_replacements_count() -> None:
    result = apply_replacement("x x x", "x", "y", 3)
    assert result.applied_content == "y y y"
    assert result.occurrence_count == 3


@pytest.mark.parametrize("expected", [None, 0, -2])
def test_expected_replacements_below_one_means_one(expected) -> None:
    assert apply_replacement("a b", "a", "c", expected).applied_content == "c b"


def test_exact_count_mismatch_reports_exact_only() -> None:
    with pytest.raises(EditOccurrenceMismatchError) as ei:
        apply_replacement("x x x", "x", "y", path="f.txt")
    err = ei.value
    assert err.code == "EDIT_OCCURRENCE_MISMATCH"
    assert "Expected 1 occurrence(s) but found 3 exact match(es)." in err.formatted
    assert "set expected_replacements to 3" in err.formatted
    assert err.details["exact"] == 3


def test_fuzzy_count_mismatch_reports_fuzzy_counts() -> None:
    with pytest.raises(EditOccurrenceMismatchError) as ei:
        apply_replacement("a  b\na   b\n", "a b", "c")
    err = ei.value
    assert "Expected 1 occurrence(s), but matching found 2 (whitespace-tolerant) and 2 (token-based)." in err.formatted
    assert err.details == {
        "path": "<memory>",
        "expected": 1,
        "exact": 0,
        "whitespace_tolerant": 2,
        "token_based": 2,
    }


def test_no_match_error_format() -> None:
    with pytest.raises(EditNoMatchError) as ei:
        apply_replacement("abc", "zzz", "y", path="src/a.py")
    formatted = ei.value.formatted
    assert formatted.startswith("No match found in file: src/a.py\n\n<error_details>\n")
    assert "Recovery suggestions:\n1. Use read_file" in formatted
    assert formatted.endswith("</error_details>")
    assert ei.value.code == "EDIT_NO_MATCH"


def test_identical_strings_are_rejected_after_line_ending_normalization() -> None:
    with pytest.raises(EditNoChangesError):
        apply_replacement("a b", "a", "a")
    with pytest.raises(EditNoChangesError):
        apply_replacement("a\nb", "a\r\nb", "a\nb")


def test_plan_edit_creates_missing_file() -> None:
    plan = plan_edit("new.txt", None, "", "hello\n")
    assert plan.created is True
    assert plan.new_content == "hello\n"
    assert plan.original_content is None
    assert plan.match is None
    assert plan.changed is True


def test_plan_edit_rejects_create_over_existing_file() -> None:
    with pytest.raises(EditFileExistsError) as ei:
        plan_edit("a.txt", "content", "", "x")
    assert ei.value.code == "EDIT_FILE_EXISTS"


def test_plan_edit_rejects_edit_of_missing_file() -> None:
    with pytest.raises(EditFileNotFoundError) as ei:
        plan_edit("missing.txt", None, "old", "new")
    assert "File does not exist at path: missing.txt" in ei.value.formatted


def test_plan_edit_existing_file() -> None:
    plan = plan_edit("a.txt", "hello world\n", "hello", "bye")
    assert plan.created is False
    assert plan.new_content == "bye world\n"
    assert plan.match is not None
    assert plan.match.strategy == "exact"
    assert plan.changed is True


def test_empty_and_blank_needles_never_match() -> None:
    assert build_whitespace_tolerant_pattern("").search("anything") is None
    assert build_token_pattern("   ").search("   ") is None


def test_failure_tracker_escalates_on_second_failure() -> None:
    tracker = EditFailureTracker(escalate_after=2)
    assert tracker.record_failure("a.py") is False
    assert tracker.record_failure("b.py") is False
    assert tracker.record_failure("a.py") is True
    assert tracker.failures("a.py") == 2
    tracker.reset("a.py")
    assert tracker.failures("a.py") == 0
    assert tracker.record_failure("a.py") is False
