"""
CRUD Service Layer
==================
High-level project operations used by the CLI and the HTTP API.

Each call loads the project from the store, runs the operation through a
Pipeline (so every mutation goes through the reconciler) and returns plain
models. This is the ONLY layer the outer surfaces should call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Callable, Optional

from .database import ProjectStore, init_db
from .dispatcher import InferenceService
from .engine import Pipeline, PipelineConfig
from .exceptions import IntakeError, ProjectNotFoundError
from .models import BatchProgress, Candidate, Page, Project, Rubric
from .scheduler import get_scheduler

logger = logging.getLogger(__name__)


def _store(config: Optional[PipelineConfig]) -> ProjectStore:
    config = config or PipelineConfig.from_env()
    store = ProjectStore(config.resolved_db_path())
    init_db(store.db_path)
    return store


def open_pipeline(
    project_id: str,
    config: Optional[PipelineConfig] = None,
    service: Optional[InferenceService] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> Pipeline:
    """
    Load a project and wire a pipeline around it.

    Raises:
        ProjectNotFoundError: If the project does not exist.
    """
    config = config or PipelineConfig.from_env()
    store = _store(config)
    project = store.get_project(project_id)
    if project is None:
        raise ProjectNotFoundError(f"Project not found: {project_id}")
    return Pipeline(
        project,
        config,
        store=store,
        service=service,
        progress_callback=progress_callback,
    )


# ─── Projects ────────────────────────────────────────────────────────────────


def create_project(name: str, config: Optional[PipelineConfig] = None) -> Project:
    store = _store(config)
    project = Project(id=uuid.uuid4().hex[:8], name=name)
    store.put_project(project)
    logger.info(f"Created project {project.id} ({name})")
    return project


def get_project(project_id: str, config: Optional[PipelineConfig] = None) -> Optional[Project]:
    return _store(config).get_project(project_id)


def list_projects(config: Optional[PipelineConfig] = None) -> list[dict]:
    return _store(config).list_projects()


def delete_project(project_id: str, config: Optional[PipelineConfig] = None) -> bool:
    """
    Delete a project with all its media.
    Refuses while a batch is running for it.
    """
    if get_scheduler(project_id) is not None:
        raise IntakeError(
            f"Project {project_id} has a running batch; stop it first",
            label="Busy",
        )
    return _store(config).delete_project(project_id)


# ─── Ingestion / Rubric ──────────────────────────────────────────────────────


def ingest_files(
    project_id: str,
    paths: list[str],
    config: Optional[PipelineConfig] = None,
) -> list[Page]:
    """Convert files and add their pages to the project's pending pool."""
    pipeline = open_pipeline(project_id, config)
    return asyncio.run(pipeline.ingest(paths))


def load_rubric_file(path: str) -> Rubric:
    """
    Read a rubric from a JSON file.

    Accepts either ``{"title": ..., "criteria": [...]}`` or a bare list of
    criteria, with snake_case or camelCase keys.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, list):
        data = {"criteria": data}

    renames = {
        "taskNumber": "task_number",
        "subTask": "sub_task",
        "maxPoints": "max_points",
    }
    criteria = [
        {renames.get(k, k): v for k, v in item.items()}
        for item in data.get("criteria", [])
    ]
    for item in criteria:
        item["task_number"] = str(item.get("task_number", ""))
        item["sub_task"] = str(item.get("sub_task") or "")
    return Rubric(title=data.get("title", ""), criteria=criteria)


def set_rubric(
    project_id: str,
    rubric: Rubric,
    config: Optional[PipelineConfig] = None,
) -> Project:
    pipeline = open_pipeline(project_id, config)
    asyncio.run(pipeline.reconciler.set_rubric(rubric))
    logger.info(
        f"Project {project_id}: rubric set ({len(rubric.criteria)} criteria)"
    )
    return pipeline.project


# ─── Batch ───────────────────────────────────────────────────────────────────


def run_batch(
    project_id: str,
    config: Optional[PipelineConfig] = None,
    service: Optional[InferenceService] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> BatchProgress:
    """Process every pending page of a project, one at a time."""
    pipeline = open_pipeline(project_id, config, service, progress_callback)
    return asyncio.run(pipeline.scheduler.run())


# ─── Page / Candidate Operations ─────────────────────────────────────────────


def retry_page(project_id: str, page_id: str, config: Optional[PipelineConfig] = None) -> Page:
    pipeline = open_pipeline(project_id, config)
    return asyncio.run(pipeline.reconciler.requeue_page(page_id, force=False))


def rescan_page(project_id: str, page_id: str, config: Optional[PipelineConfig] = None) -> Page:
    pipeline = open_pipeline(project_id, config)
    return asyncio.run(pipeline.reconciler.requeue_page(page_id, force=True))


def rotate_page(project_id: str, page_id: str, config: Optional[PipelineConfig] = None) -> Page:
    pipeline = open_pipeline(project_id, config)
    return asyncio.run(pipeline.reconciler.rotate_page(page_id))


def move_page(
    project_id: str,
    page_id: str,
    target_candidate_id: str,
    config: Optional[PipelineConfig] = None,
) -> Candidate:
    pipeline = open_pipeline(project_id, config)
    return asyncio.run(
        pipeline.reconciler.move_page(page_id, target_candidate_id)
    )


def merge_candidates(
    project_id: str,
    source_id: str,
    target_id: str,
    config: Optional[PipelineConfig] = None,
) -> Candidate:
    pipeline = open_pipeline(project_id, config)
    return asyncio.run(
        pipeline.reconciler.merge_candidates(source_id, target_id)
    )


# ─── Cache Administration ────────────────────────────────────────────────────


def cache_stats(config: Optional[PipelineConfig] = None) -> dict:
    store = _store(config)
    return {"entries": store.cache_count(), "db_path": store.db_path}


def clear_cache(config: Optional[PipelineConfig] = None) -> int:
    removed = _store(config).cache_clear()
    logger.info(f"Cleared {removed} cache entries")
    return removed


# ─── Serialization ───────────────────────────────────────────────────────────


def project_summary(project: Project) -> dict:
    """Compact view of a project for listings (no previews)."""
    pool_status: dict[str, int] = {}
    for page in project.unprocessed_pages:
        pool_status[page.status.value] = pool_status.get(page.status.value, 0) + 1
    return {
        "id": project.id,
        "name": project.name,
        "status": project.status.value,
        "updated_at": project.updated_at,
        "has_rubric": project.rubric is not None,
        "candidate_count": project.candidate_count,
        "evaluated_count": project.evaluated_count,
        "unprocessed": pool_status,
        "candidates": [
            {
                "id": c.id,
                "name": c.name,
                "status": c.status.value,
                "pages": [
                    {
                        "id": p.id,
                        "part": p.part.value if p.part else None,
                        "page_number": p.page_number,
                        "tasks": [t.label for t in p.identified_tasks],
                    }
                    for p in c.pages
                ],
            }
            for c in project.candidates
        ],
        "errors": [
            {"id": p.id, "file_name": p.file_name, "label": p.status_label}
            for p in project.unprocessed_pages
            if p.status_label
        ],
    }
