"""
Test Suite for Response Validation
==================================
Task label cleaning, rubric whitelisting, identifier normalization and the
response wire schema.
"""

from __future__ import annotations

import json

import pytest

from intake.exceptions import MalformedResponseError
from intake.models import (
    UNKNOWN_CANDIDATE,
    IdentifiedTask,
    LayoutType,
    Part,
    Rubric,
    RubricCriterion,
    SpreadSide,
)
from intake.validator import (
    ResponseValidator,
    clean_json,
    clean_task_pair,
    filter_tasks,
    normalize_candidate_id,
    normalize_part,
    parse_response,
    rubric_criteria,
    rubric_whitelist,
    sanitize_label,
    sanitize_task_id,
)

from conftest import entry, response


def _task(num, sub=""):
    return IdentifiedTask(task_number=num, sub_task=sub)


# ═══════════════════════════════════════════════════════════════════════════════
# TASK LABEL TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestSanitize:

    def test_task_id_keeps_alphanumerics(self):
        assert sanitize_task_id(" 3 b) ") == "3B"
        assert sanitize_task_id(None) == ""

    def test_label_strips_trailing_punctuation(self):
        assert sanitize_label("b)") == "B"
        assert sanitize_label("4.") == "4"

    def test_long_label_falls_back_to_token(self):
        assert sanitize_label("see page 4a and more") == "4A"

    def test_forbidden_token_without_number_is_dropped(self):
        assert sanitize_label("total") == ""
        assert sanitize_label("none") == ""


class TestCleanTaskPair:
    """Normalization of raw (task number, sub-task) pairs."""

    @pytest.mark.parametrize("number, sub, expected", [
        ("Oppgave 3", "b)", ("3", "B")),
        ("Task 5", "", ("5", "")),
        ("3b", "", ("3", "B")),
        ("4", "4a", ("4", "A")),
        ("4A", "A", ("4", "A")),
        ("2", "aa", ("2", "A")),
        ("opg. 7", "c", ("7", "C")),
        ("Problem 2 del 1", "", ("2", "")),
    ])
    def test_pairs(self, number, sub, expected):
        task = clean_task_pair(number, sub)
        assert (task.task_number, task.sub_task) == expected

    def test_repeated_digits_are_kept(self):
        task = clean_task_pair("11", "")
        assert task.task_number == "11"

    def test_empty_pair_is_dropped(self):
        assert clean_task_pair("", "") is None
        assert clean_task_pair(None, None) is None

    def test_noise_is_dropped(self):
        assert clean_task_pair("Total points", "") is None


class TestWhitelist:
    """Filtering of identified tasks against the rubric."""

    def test_rubric_whitelist(self, rubric):
        assert rubric_whitelist(rubric) == {"1A", "1B", "2", "3A"}

    def test_empty_rubric_means_no_filter(self):
        assert rubric_whitelist(None) is None
        assert rubric_whitelist(Rubric(criteria=[])) is None

    def test_criteria_carry_descriptions(self):
        rubric = Rubric(criteria=[
            RubricCriterion(task_number="2", description="Graph the line"),
            RubricCriterion(task_number=" 1 ", sub_task="a", name="Equations"),
            RubricCriterion(task_number="1", sub_task="A", description="dup"),
        ])
        assert rubric_criteria(rubric) == [
            {"taskNumber": "1", "subTask": "A", "description": "Equations"},
            {"taskNumber": "2", "subTask": "", "description": "Graph the line"},
        ]
        assert rubric_criteria(None) is None

    def test_exact_match(self, rubric):
        tasks = filter_tasks([_task("1", "A"), _task("3", "A")],
                             rubric_whitelist(rubric))
        assert [t.label for t in tasks] == ["1A", "3A"]

    def test_unknown_task_dropped(self, rubric):
        tasks = filter_tasks([_task("9"), _task("1", "C")],
                             rubric_whitelist(rubric))
        assert tasks == []

    def test_bare_number_fallback(self, rubric):
        tasks = filter_tasks([_task("2", "C")], rubric_whitelist(rubric))
        assert [t.label for t in tasks] == ["2"]

    def test_digit_stutter_fallback(self, rubric):
        tasks = filter_tasks([_task("11", "A"), _task("22")],
                             rubric_whitelist(rubric))
        assert [t.label for t in tasks] == ["1A", "2"]

    def test_stutter_does_not_override_real_task(self):
        tasks = filter_tasks([_task("11")], {"1", "11"})
        assert [t.label for t in tasks] == ["11"]

    def test_duplicates_removed(self, rubric):
        tasks = filter_tasks(
            [_task("1", "A"), _task("1", "A"), _task("11", "A")],
            rubric_whitelist(rubric),
        )
        assert [t.label for t in tasks] == ["1A"]

    def test_no_whitelist_only_dedups(self):
        tasks = filter_tasks([_task("9"), _task("9"), _task("8", "B")])
        assert [t.label for t in tasks] == ["9", "8B"]


# ═══════════════════════════════════════════════════════════════════════════════
# IDENTIFIER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCandidateId:

    @pytest.mark.parametrize("raw, expected", [
        ("101", "101"),
        ("Kandidat 101", "101"),
        ("Candidate #42", "42"),
        ("007", "007"),
        (7, "7"),
        ("", UNKNOWN_CANDIDATE),
        ("unknown", UNKNOWN_CANDIDATE),
        ("??", UNKNOWN_CANDIDATE),
        (None, UNKNOWN_CANDIDATE),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_candidate_id(raw) == expected


class TestPart:

    @pytest.mark.parametrize("raw, expected", [
        ("Part 1", Part.PART_1),
        ("part 2", Part.PART_2),
        ("Del 1", Part.PART_1),
        ("2", Part.PART_2),
        ("Part 3", None),
        ("", None),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_part(raw) == expected


# ═══════════════════════════════════════════════════════════════════════════════
# RESPONSE PARSING TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCleanJson:

    def test_strips_markdown_fence(self):
        text = "```json\n[{\"a\": 1}]\n```"
        assert json.loads(clean_json(text)) == [{"a": 1}]

    def test_isolates_json_from_prose(self):
        text = "Here you go:\n[{\"a\": 1}]\nHope this helps."
        assert json.loads(clean_json(text)) == [{"a": 1}]

    def test_escapes_latex_backslashes(self):
        text = '[{"fullText": "x = \\frac{1}{2} + \\sqrt{3}"}]'
        parsed = json.loads(clean_json(text))
        assert parsed[0]["fullText"] == "x = \\frac{1}{2} + \\sqrt{3}"

    def test_keeps_valid_escapes(self):
        text = '[{"fullText": "say \\"hi\\" \\u00e6 a\\\\b"}]'
        parsed = json.loads(clean_json(text))
        assert parsed[0]["fullText"] == 'say "hi" æ a\\b'

    def test_empty(self):
        assert clean_json(None) == ""
        assert clean_json("") == ""


class TestParseResponse:
    """Every deviation from the wire schema is a malformed response."""

    def test_valid_response(self):
        raws = parse_response(response(entry(), entry(page=2)))
        assert len(raws) == 2
        assert raws[0].page_number == 1

    @pytest.mark.parametrize("text", [
        "not json at all",
        "",
        '{"candidateId": "1"}',
        "[]",
        "[1, 2]",
    ])
    def test_bad_shapes(self, text):
        with pytest.raises(MalformedResponseError):
            parse_response(text)

    def test_missing_required_field(self):
        item = entry()
        del item["fullText"]
        with pytest.raises(MalformedResponseError):
            parse_response(json.dumps([item]))

    def test_wrong_field_type(self):
        item = entry()
        item["pageNumber"] = "3"
        with pytest.raises(MalformedResponseError):
            parse_response(json.dumps([item]))

    def test_rotation_must_be_quarter_turn(self):
        with pytest.raises(MalformedResponseError):
            parse_response(response(entry(rotation=45)))

    def test_unknown_layout(self):
        with pytest.raises(MalformedResponseError):
            parse_response(response(entry(layout="diagonal")))

    def test_one_bad_entry_fails_whole_page(self):
        good = entry()
        bad = entry(page=2)
        bad["identifiedTasks"] = "1a"
        with pytest.raises(MalformedResponseError):
            parse_response(json.dumps([good, bad]))

    def test_layout_aliases(self):
        raws = parse_response(response(
            entry(layout="a3_spread", side="left"),
            entry(layout="A4_SINGLE"),
        ))
        assert raws[0].layout_type == LayoutType.SPREAD
        assert raws[0].side_in_spread == SpreadSide.LEFT
        assert raws[1].layout_type == LayoutType.SINGLE


class TestResponseValidator:

    def test_normalizes_results(self):
        text = response(entry(
            candidate="Kandidat 0042",
            part="del 2",
            tasks=(("Oppgave 3", "b)"), ("3b", ""), ("4", "4a")),
            rotation=450,
        ))
        [result] = ResponseValidator().validate(text)
        assert result.candidate_id == "0042"
        assert result.raw_candidate_id == "Kandidat 0042"
        assert result.part == Part.PART_2
        assert [t.label for t in result.identified_tasks] == ["3B", "4A"]
        assert result.rotation == 90

    def test_integer_candidate_id(self):
        item = entry()
        item["candidateId"] = 101
        [result] = ResponseValidator().validate(json.dumps([item]))
        assert result.candidate_id == "101"

    def test_side_only_kept_for_spreads(self):
        [result] = ResponseValidator().validate(
            response(entry(layout="single", side="RIGHT"))
        )
        assert result.side is None

    def test_missing_candidate_is_unknown(self):
        item = entry()
        del item["candidateId"]
        [result] = ResponseValidator().validate(json.dumps([item]))
        assert result.candidate_id == UNKNOWN_CANDIDATE
