"""
Response Validation
===================
Schema validation and normalization of inference service responses.

Every response is checked against an explicit wire schema before any field
is trusted:
    - JSON errors, non-list payloads and empty lists are malformed
    - Missing required fields or wrong types are malformed
    - Rotations that are not a multiple of 90 are malformed

Valid interpretations are then normalized:
    - Task labels are cleaned and de-duplicated
    - Candidate identifiers are reduced to digits or the unknown sentinel
    - Part labels are mapped onto the fixed Part set

Never partially trusts a response: one bad entry fails the whole page.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Iterable, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from .exceptions import MalformedResponseError
from .models import (
    UNKNOWN_CANDIDATE,
    AnalysisResult,
    IdentifiedTask,
    LayoutType,
    Part,
    Rubric,
    SpreadSide,
)

logger = logging.getLogger(__name__)

# ─── Task Label Rules ────────────────────────────────────────────────────────

MAX_LABEL_LENGTH = 6
FORBIDDEN_TOKENS = ("TOTAL", "PAGE", "NONE", "SIDE", "SUM")

_TASK_PREFIX = re.compile(
    r"^(?:oppgave|opg\.?|task|problem|spørsmål|question|deloppgave|part)\s*",
    re.IGNORECASE,
)
_PART_INFO = re.compile(r"(?:del|part)\s*\d+", re.IGNORECASE)
_TRAILING_PUNCT = re.compile(r"[\s.,:;)\]}!?-]+$")
_FALLBACK_TOKEN = re.compile(r"\d+[A-Z]?")
_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_DIGIT_STUTTER = re.compile(r"^(\d)\1+$")
_LETTER_STUTTER = re.compile(r"^([A-Z])\1+$")
_COMBINED = re.compile(r"^(\d+)([A-Z]+)$")

# JSON escapes kept as-is; every other backslash is doubled
_JSON_ESCAPE = re.compile(r'\\(["\\/]|u[0-9a-fA-F]{4})|\\')


def sanitize_task_id(value) -> str:
    """Upper-case and keep only ASCII letters and digits."""
    if value is None:
        return ""
    return _NON_ALNUM.sub("", str(value).upper())


def sanitize_label(value) -> str:
    """
    Clean one raw label (task number or sub-task).

    Trims, upper-cases and strips trailing punctuation. Labels that look like
    free-text noise (too long, or containing a forbidden token) are reduced
    to a short ``\\d+[A-Z]?`` token when one can be found, else discarded.
    """
    text = _TRAILING_PUNCT.sub("", str(value or "").strip().upper())
    if not text:
        return ""
    compact = sanitize_task_id(text)
    if len(compact) > MAX_LABEL_LENGTH or any(
        token in text for token in FORBIDDEN_TOKENS
    ):
        match = _FALLBACK_TOKEN.search(text)
        return match.group(0) if match else ""
    return compact


def clean_task_pair(number, sub_task="") -> Optional[IdentifiedTask]:
    """
    Normalize a raw ``(task number, sub-task)`` pair.

    Examples:
        ("Oppgave 3", "b)")   -> 3 / B
        ("3b", "")            -> 3 / B
        ("4", "4a")           -> 4 / A
        ("2", "aa")           -> 2 / A

    Returns:
        IdentifiedTask, or None when nothing usable remains.
    """
    raw_num = _TASK_PREFIX.sub("", str(number or "").strip())
    raw_num = _PART_INFO.sub("", raw_num).strip()
    raw_sub = _PART_INFO.sub("", str(sub_task or "")).strip()

    num = sanitize_label(raw_num)
    sub = sanitize_label(raw_sub)
    sub = _LETTER_STUTTER.sub(r"\1", sub)

    # "4" + "4A": the sub-task repeats the number
    if num and len(sub) > len(num) and sub.startswith(num):
        rest = sub[len(num):]
        if rest.isalpha():
            sub = rest

    # "4A" + "A": the number repeats the sub-task
    if sub and len(num) > len(sub) and num.endswith(sub):
        num = num[:-len(sub)]

    if not sub:
        match = _COMBINED.match(num)
        if match:
            num, sub = match.group(1), match.group(2)

    if not num and not sub:
        return None
    return IdentifiedTask(task_number=num, sub_task=sub)


def rubric_whitelist(rubric: Optional[Rubric]) -> Optional[set[str]]:
    """
    Set of valid task labels for a rubric.
    Returns None when there is nothing to filter against.
    """
    if rubric is None or not rubric.criteria:
        return None
    return {
        sanitize_task_id(c.task_number) + sanitize_task_id(c.sub_task)
        for c in rubric.criteria
    }


def rubric_criteria(rubric: Optional[Rubric]) -> Optional[list[dict]]:
    """
    Rubric criteria as sent to the inference service, one per task label,
    sorted by label.
    """
    if rubric is None or not rubric.criteria:
        return None
    by_label: dict[str, dict] = {}
    for c in rubric.criteria:
        num = sanitize_task_id(c.task_number)
        sub = sanitize_task_id(c.sub_task)
        by_label.setdefault(num + sub, {
            "taskNumber": num,
            "subTask": sub,
            "description": c.description or c.name,
        })
    return [by_label[label] for label in sorted(by_label)]


def _match_whitelist(
    task: IdentifiedTask, whitelist: set[str]
) -> Optional[IdentifiedTask]:
    num, sub = task.task_number, task.sub_task
    if f"{num}{sub}" in whitelist:
        return task
    if sub and num in whitelist:
        return IdentifiedTask(task_number=num, sub_task="")
    if _DIGIT_STUTTER.match(num):
        single = num[0]
        if f"{single}{sub}" in whitelist:
            return IdentifiedTask(task_number=single, sub_task=sub)
        if sub and single in whitelist:
            return IdentifiedTask(task_number=single, sub_task="")
    return None


def filter_tasks(
    tasks: Iterable[IdentifiedTask],
    whitelist: Optional[set[str]] = None,
) -> list[IdentifiedTask]:
    """
    De-duplicate tasks (first occurrence wins) and, when a whitelist is
    given, keep only the ones it allows.
    """
    result: list[IdentifiedTask] = []
    seen: set[str] = set()
    for task in tasks:
        if whitelist is not None:
            task = _match_whitelist(task, whitelist)
            if task is None:
                continue
        if task.label in seen:
            continue
        seen.add(task.label)
        result.append(task)
    return result


def apply_whitelist(
    results: list[AnalysisResult],
    whitelist: Optional[set[str]],
) -> list[AnalysisResult]:
    """Return copies of ``results`` with tasks filtered by ``whitelist``."""
    if whitelist is None:
        return results
    return [
        r.model_copy(update={
            "identified_tasks": filter_tasks(r.identified_tasks, whitelist)
        })
        for r in results
    ]


# ─── Candidate / Part Normalization ──────────────────────────────────────────


def normalize_candidate_id(raw) -> str:
    """
    Reduce a raw candidate identifier to its digits.

    Leading zeros are kept ("007" stays "007"). Anything without a digit
    maps to the unknown sentinel.
    """
    if raw is None:
        return UNKNOWN_CANDIDATE
    digits = re.sub(r"\D", "", str(raw))
    return digits or UNKNOWN_CANDIDATE


def normalize_part(raw) -> Optional[Part]:
    """Map "Part 1", "Del 2", "2" and similar onto Part; else None."""
    if raw is None:
        return None
    text = str(raw).strip().lower()
    match = re.fullmatch(r"(?:part|del)?\s*([12])", text)
    if not match:
        return None
    return Part.PART_1 if match.group(1) == "1" else Part.PART_2


# ─── Wire Schema ─────────────────────────────────────────────────────────────


class RawTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True, strict=True)

    task_number: StrictStr = Field(alias="taskNumber")
    sub_task: Optional[StrictStr] = Field(default="", alias="subTask")


class RawPageInterpretation(BaseModel):
    """One entry of the service response, exactly as sent on the wire."""
    model_config = ConfigDict(populate_by_name=True, strict=True)

    layout_type: LayoutType = Field(alias="layoutType")
    full_text: StrictStr = Field(alias="fullText")
    identified_tasks: list[RawTask] = Field(alias="identifiedTasks")
    rotation: StrictInt
    page_number: StrictInt = Field(alias="pageNumber")
    side_in_spread: Optional[SpreadSide] = Field(
        default=None, alias="sideInSpread"
    )
    candidate_id: Optional[Union[StrictStr, StrictInt]] = Field(
        default=None, alias="candidateId"
    )
    part: Optional[StrictStr] = None
    visual_evidence: Optional[StrictStr] = Field(
        default=None, alias="visualEvidence"
    )

    @field_validator("layout_type", mode="before")
    @classmethod
    def _layout_alias(cls, value):
        if not isinstance(value, str):
            raise ValueError("layoutType must be a string")
        key = value.strip().lower()
        aliases = {"a4_single": "single", "a3_spread": "spread"}
        return LayoutType(aliases.get(key, key))

    @field_validator("side_in_spread", mode="before")
    @classmethod
    def _side_upper(cls, value):
        if value is None or value == "":
            return None
        if not isinstance(value, str):
            raise ValueError("sideInSpread must be a string")
        return SpreadSide(value.strip().upper())

    @field_validator("rotation")
    @classmethod
    def _rotation_step(cls, value: int) -> int:
        if value % 90 != 0:
            raise ValueError(f"rotation {value} is not a multiple of 90")
        return value


_RESPONSE_ADAPTER = TypeAdapter(list[RawPageInterpretation])


def clean_json(text: Optional[str]) -> str:
    """
    Extract the JSON document from a model response.

    Strips markdown fences, isolates the outermost object/array and escapes
    stray backslashes (LaTeX such as ``\\frac``) so they survive parsing.
    """
    if not text:
        return ""
    cleaned = text.strip()

    if "```" in cleaned:
        cleaned = re.sub(r"^[\s\S]*?```(?:json)?\s*", "", cleaned, count=1)
        cleaned = re.sub(r"```[\s\S]*$", "", cleaned).strip()

    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    end = max(cleaned.rfind("}"), cleaned.rfind("]"))
    if starts and end != -1 and end > min(starts):
        cleaned = cleaned[min(starts):end + 1]

    return _JSON_ESCAPE.sub(
        lambda m: m.group(0) if m.group(1) else "\\\\", cleaned
    )


def parse_response(text: Optional[str]) -> list[RawPageInterpretation]:
    """
    Parse and schema-check a raw response.

    Raises:
        MalformedResponseError: On any JSON or shape deviation.
    """
    cleaned = clean_json(text)
    try:
        payload = json.loads(cleaned, strict=False)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Response is not valid JSON: {e}") from e

    if not isinstance(payload, list):
        raise MalformedResponseError(
            f"Expected a list of page interpretations, got "
            f"{type(payload).__name__}"
        )
    if not payload:
        raise MalformedResponseError("Response contains no interpretations")

    try:
        return _RESPONSE_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise MalformedResponseError(
            f"Response failed schema validation: "
            f"{e.error_count()} error(s); first: {e.errors()[0]['msg']}"
        ) from e


def to_result(raw: RawPageInterpretation) -> AnalysisResult:
    """Normalize one validated interpretation (no rubric filtering)."""
    tasks = [
        t for t in (
            clean_task_pair(rt.task_number, rt.sub_task or "")
            for rt in raw.identified_tasks
        )
        if t is not None
    ]
    side = raw.side_in_spread if raw.layout_type == LayoutType.SPREAD else None
    return AnalysisResult(
        candidate_id=normalize_candidate_id(raw.candidate_id),
        raw_candidate_id=(
            str(raw.candidate_id) if raw.candidate_id is not None else None
        ),
        page_number=raw.page_number,
        part=normalize_part(raw.part),
        full_text=raw.full_text,
        visual_evidence=raw.visual_evidence or None,
        identified_tasks=filter_tasks(tasks),
        rotation=raw.rotation % 360,
        layout_type=raw.layout_type,
        side=side,
    )


class ResponseValidator:
    """
    Turns raw response text into normalized AnalysisResults.
    """

    def validate(self, text: Optional[str]) -> list[AnalysisResult]:
        """
        Validate a response and normalize each interpretation.

        Args:
            text: Raw response text from the inference service.

        Returns:
            Normalized results, before rubric filtering.

        Raises:
            MalformedResponseError: If the response is not fully valid.
        """
        results = [to_result(raw) for raw in parse_response(text)]

        unknown = sum(1 for r in results if r.candidate_id == UNKNOWN_CANDIDATE)
        logger.debug(
            f"Validated {len(results)} interpretation(s), "
            f"{unknown} with unresolved candidate"
        )
        return results
