"""
Shared fixtures: temporary stores, synthetic page images and a scripted
inference service standing in for the Gemini API.
"""

from __future__ import annotations

import asyncio
import io
import json
from typing import Optional, Union

import pytest
from PIL import Image

from intake.database import ProjectStore
from intake.engine import Pipeline, PipelineConfig
from intake.hashing import content_hash
from intake.models import Page, Project, Rubric, RubricCriterion


# ─── Images ──────────────────────────────────────────────────────────────────


def make_jpeg(width: int = 60, height: int = 80, color=(255, 255, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="JPEG", quality=95)
    return buf.getvalue()


def make_spread(width: int = 200, height: int = 100) -> bytes:
    """Left half red, right half blue."""
    image = Image.new("RGB", (width, height), (0, 0, 255))
    image.paste((255, 0, 0), (0, 0, width // 2, height))
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=95)
    return buf.getvalue()


def image_size(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        return img.size


# ─── Responses ───────────────────────────────────────────────────────────────


def entry(
    candidate="101",
    page=1,
    part: Optional[str] = "Part 1",
    tasks=(("1", "a"),),
    layout="single",
    side=None,
    rotation=0,
    text="answer text",
    evidence=None,
) -> dict:
    """One page interpretation, shaped like the service's wire format."""
    item = {
        "candidateId": candidate,
        "pageNumber": page,
        "part": part,
        "fullText": text,
        "identifiedTasks": [
            {"taskNumber": num, "subTask": sub} for num, sub in tasks
        ],
        "rotation": rotation,
        "layoutType": layout,
    }
    if side is not None:
        item["sideInSpread"] = side
    if evidence is not None:
        item["visualEvidence"] = evidence
    return item


def response(*entries: dict) -> str:
    return json.dumps(list(entries))


class FakeService:
    """
    Scripted inference service.

    ``replies`` maps payload bytes to response text (or an exception to
    raise); ``default`` answers everything else.
    """

    def __init__(
        self,
        replies: Optional[dict] = None,
        default: Union[str, Exception, None] = None,
    ):
        self.replies = replies or {}
        self.default = default if default is not None else response(entry())
        self.calls: list[tuple[bytes, str, Optional[list[dict]]]] = []

    async def analyze(self, payload, mime_type, criteria=None) -> str:
        self.calls.append((payload, mime_type, criteria))
        reply = self.replies.get(payload, self.default)
        if isinstance(reply, Exception):
            raise reply
        return reply


# ─── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "intake.sqlite")


@pytest.fixture
def store(db_path):
    return ProjectStore(db_path).init()


@pytest.fixture
def config(db_path):
    return PipelineConfig(db_path=db_path, slow_call_warning_seconds=None)


@pytest.fixture
def rubric():
    return Rubric(
        title="Math 1T",
        criteria=[
            RubricCriterion(task_number="1", sub_task="A", max_points=2),
            RubricCriterion(task_number="1", sub_task="B", max_points=2),
            RubricCriterion(task_number="2", max_points=4),
            RubricCriterion(task_number="3", sub_task="A", max_points=3),
        ],
    )


@pytest.fixture
def make_pipeline(store, config):
    """Build a pipeline around a fresh project in the temporary store."""

    def _make(
        service: Optional[FakeService] = None,
        rubric: Optional[Rubric] = None,
        **overrides,
    ) -> Pipeline:
        project = Project(id="proj1", name="Test exam", rubric=rubric)
        store.put_project(project)
        for key, value in overrides.items():
            setattr(config, key, value)
        return Pipeline(
            project,
            config,
            store=store,
            service=service or FakeService(),
        )

    return _make


def add_image_page(
    pipeline: Pipeline,
    page_id: str,
    data: bytes,
    file_name: str = "",
) -> Page:
    """Put an image page into the pool, media included."""
    pipeline.store.put_media(page_id, data, "image/jpeg")
    page = Page(
        id=page_id,
        file_name=file_name or f"{page_id}.jpg",
        content_hash=content_hash(data),
        mime_type="image/jpeg",
    )
    asyncio.run(pipeline.reconciler.add_pages([page]))
    return pipeline.project.find_unprocessed(page_id)
