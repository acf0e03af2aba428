"""
Data Models
===========
Pydantic models for projects, candidates and pages.
All models are serializable to JSON for the project store.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

UNKNOWN_CANDIDATE = "unknown"
TEXT_MIME_TYPE = "text/plain"


# ─── Enums ────────────────────────────────────────────────────────────────────


class PageStatus(str, Enum):
    """Lifecycle status of a page."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class CandidateStatus(str, Enum):
    """Lifecycle status of a candidate submission."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EVALUATED = "evaluated"


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    REVIEW = "review"
    COMPLETED = "completed"


class LayoutType(str, Enum):
    """Layout hint reported by the inference service."""
    SINGLE = "single"
    SPREAD = "spread"


class SpreadSide(str, Enum):
    LEFT = "LEFT"
    RIGHT = "RIGHT"

    @property
    def suffix(self) -> str:
        return "_L" if self is SpreadSide.LEFT else "_R"


class Part(str, Enum):
    """Coarse exam section (calculator-free / calculator-allowed)."""
    PART_1 = "Part 1"
    PART_2 = "Part 2"


# ─── Tasks ────────────────────────────────────────────────────────────────────


class IdentifiedTask(BaseModel):
    """A task/subtask pair such as 3 / B."""
    task_number: str
    sub_task: str = ""

    @property
    def label(self) -> str:
        return f"{self.task_number}{self.sub_task}".upper()


# ─── Page / Candidate ─────────────────────────────────────────────────────────


class Page(BaseModel):
    """
    One physical or logical sheet.

    The raw media lives in the store's media namespace keyed by ``id``;
    only a small preview is kept inline.
    """
    id: str
    file_name: str = ""
    content_hash: str
    mime_type: str = "image/jpeg"
    image_preview: Optional[str] = Field(
        default=None,
        description="Small JPEG data URI for listings",
    )
    text_preview: Optional[str] = Field(
        default=None,
        description="Leading text of a digital document for listings",
    )
    source_page_id: Optional[str] = None

    candidate_id: Optional[str] = None
    page_number: Optional[int] = None
    part: Optional[Part] = None
    transcription: Optional[str] = None
    visual_evidence: Optional[str] = None
    identified_tasks: list[IdentifiedTask] = Field(default_factory=list)
    rotation: int = 0
    layout_type: LayoutType = LayoutType.SINGLE

    status: PageStatus = PageStatus.PENDING
    status_label: Optional[str] = None
    force_rescan: bool = False

    @property
    def is_digital(self) -> bool:
        return self.mime_type == TEXT_MIME_TYPE

    def sort_key(self) -> tuple:
        """Rendering order: part, then page number; unknowns last."""
        part_rank = (
            list(Part).index(self.part) if self.part is not None else len(Part)
        )
        number = self.page_number if self.page_number is not None else 10**6
        return (part_rank, number, self.id)


class Candidate(BaseModel):
    """A student's submission."""
    id: str
    project_id: str = ""
    name: str
    pages: list[Page] = Field(default_factory=list)
    status: CandidateStatus = CandidateStatus.PENDING

    def sort_pages(self):
        self.pages.sort(key=lambda p: p.sort_key())

    def page_index(self, page_id: str) -> int:
        for idx, page in enumerate(self.pages):
            if page.id == page_id:
                return idx
        return -1


# ─── Rubric ───────────────────────────────────────────────────────────────────


class RubricCriterion(BaseModel):
    task_number: str
    sub_task: str = ""
    part: Optional[str] = None
    name: str = ""
    description: str = ""
    max_points: float = 0.0


class Rubric(BaseModel):
    """Grading rubric; only its task labels matter to intake."""
    title: str = ""
    criteria: list[RubricCriterion] = Field(default_factory=list)

    @computed_field
    @property
    def total_max_points(self) -> float:
        return sum(c.max_points for c in self.criteria)


# ─── Project ──────────────────────────────────────────────────────────────────


class Project(BaseModel):
    """
    Aggregate root persisted as a single document in the project store.
    Only the reconciler and scheduler mutate ``candidates`` and
    ``unprocessed_pages``.
    """
    id: str
    name: str
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    candidates: list[Candidate] = Field(default_factory=list)
    unprocessed_pages: list[Page] = Field(default_factory=list)
    rubric: Optional[Rubric] = None
    status: ProjectStatus = ProjectStatus.DRAFT

    @computed_field
    @property
    def candidate_count(self) -> int:
        return len(self.candidates)

    @computed_field
    @property
    def evaluated_count(self) -> int:
        return sum(
            1 for c in self.candidates
            if c.status == CandidateStatus.EVALUATED
        )

    def find_candidate(self, candidate_id: str) -> Optional[Candidate]:
        for cand in self.candidates:
            if cand.id == candidate_id:
                return cand
        return None

    def find_unprocessed(self, page_id: str) -> Optional[Page]:
        for page in self.unprocessed_pages:
            if page.id == page_id:
                return page
        return None

    def locate_page(
        self, page_id: str
    ) -> tuple[Optional[Candidate], Optional[Page]]:
        """Find a page in the pool or in any candidate."""
        page = self.find_unprocessed(page_id)
        if page is not None:
            return None, page
        for cand in self.candidates:
            idx = cand.page_index(page_id)
            if idx >= 0:
                return cand, cand.pages[idx]
        return None, None

    def pending_pages(self) -> list[Page]:
        return [
            p for p in self.unprocessed_pages
            if p.status == PageStatus.PENDING
        ]

    def touch(self):
        self.updated_at = time.time()


# ─── Analysis ─────────────────────────────────────────────────────────────────


class AnalysisResult(BaseModel):
    """
    One validated, normalized page interpretation.
    Produced by the dispatcher; consumed by the reconciler.
    """
    candidate_id: str = UNKNOWN_CANDIDATE
    raw_candidate_id: Optional[str] = None
    page_number: int = 0
    part: Optional[Part] = None
    full_text: str = ""
    visual_evidence: Optional[str] = None
    identified_tasks: list[IdentifiedTask] = Field(default_factory=list)
    rotation: int = 0
    layout_type: LayoutType = LayoutType.SINGLE
    side: Optional[SpreadSide] = None

    @property
    def is_blank(self) -> bool:
        return (
            not self.full_text.strip()
            and not (self.visual_evidence or "").strip()
            and not self.identified_tasks
        )


class BatchState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class BatchProgress(BaseModel):
    """Snapshot of a scheduler run."""
    state: BatchState = BatchState.IDLE
    total: int = 0
    completed: int = 0
    errors: int = 0
    current_page_id: Optional[str] = None

    @computed_field
    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total * 100, 2)
