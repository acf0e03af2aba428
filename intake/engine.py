"""
Intake Engine
=============
Configuration, logging setup and wiring of the pipeline for one project.

Usage:
    pipeline = Pipeline(project, PipelineConfig.from_env())
    await pipeline.ingest(["scans/class_a.pdf"])
    progress = await pipeline.scheduler.run()

Architecture:
    file → Rasterizer → pending Pages (hash, media, preview) →
    BatchScheduler → AnalysisDispatcher (ResultCache, GeminiClient) →
    CandidateReconciler (LayoutNormalizer) → ProjectStore
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .cache import ResultCache
from .database import ProjectStore, get_db_path
from .dispatcher import AnalysisDispatcher, InferenceService
from .gemini_client import DEFAULT_MODEL, GeminiClient, RateLimiter
from .hashing import content_hash
from .layout import LayoutNormalizer
from .models import Page, PageStatus, Project
from .rasterizer import Rasterizer, RawPage
from .reconciler import CandidateReconciler
from .scheduler import BatchScheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Characters of a digital document kept inline on its page record
TEXT_PREVIEW_LENGTH = 280


@dataclass
class PipelineConfig:
    """Configuration for the intake pipeline."""

    # Storage
    db_path: Optional[str] = None
    use_cache: bool = True

    # Inference service
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    request_interval: float = 1.0
    max_retries: int = 2
    quota_backoff: float = 5.0
    transient_wait: float = 2.0

    # Images
    render_dpi: int = 150
    jpeg_quality: int = 85
    preview_size: int = 400

    # Batch
    halt_on_quota: bool = False
    slow_call_warning_seconds: Optional[float] = 120.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Build a config from ``INTAKE_*`` environment variables."""
        env = os.environ
        config = cls(
            db_path=env.get("INTAKE_DB_PATH") or None,
            api_key=env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY"),
            model=env.get("INTAKE_MODEL", DEFAULT_MODEL),
            request_interval=float(env.get("INTAKE_REQUEST_INTERVAL", 1.0)),
            max_retries=int(env.get("INTAKE_MAX_RETRIES", 2)),
            render_dpi=int(env.get("INTAKE_RENDER_DPI", 150)),
            halt_on_quota=env.get("INTAKE_HALT_ON_QUOTA", "").lower()
            in ("1", "true", "yes"),
            log_level=env.get("INTAKE_LOG_LEVEL", "INFO"),
            log_file=env.get("INTAKE_LOG_FILE") or None,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)
        return config

    def resolved_db_path(self) -> str:
        return self.db_path or get_db_path()


def setup_logging(config: PipelineConfig):
    """Configure the ``intake`` package logger from config."""
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    intake_logger = logging.getLogger("intake")
    intake_logger.setLevel(log_level)

    # Console handler
    if not intake_logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(log_level)
        console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        intake_logger.addHandler(console)

    # File handler
    if config.log_file:
        log_path = Path(config.log_file).resolve()
        has_file = any(
            isinstance(h, logging.FileHandler)
            and Path(h.baseFilename) == log_path
            for h in intake_logger.handlers
        )
        if not has_file:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(
                logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
            )
            intake_logger.addHandler(file_handler)


def new_page_id() -> str:
    return uuid.uuid4().hex[:12]


class Pipeline:
    """
    All pipeline components for one project, sharing one store.

    Args:
        project: The project to work on.
        config: Pipeline configuration.
        store: Store override (defaults to the configured SQLite file).
        service: Inference service override (defaults to a lazily
            created GeminiClient).
        progress_callback: Callback(completed, total) after each page.
    """

    def __init__(
        self,
        project: Project,
        config: Optional[PipelineConfig] = None,
        store: Optional[ProjectStore] = None,
        service: Optional[InferenceService] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ):
        self.config = config or PipelineConfig()
        setup_logging(self.config)

        self.store = store or ProjectStore(self.config.resolved_db_path())
        self.normalizer = LayoutNormalizer(
            jpeg_quality=self.config.jpeg_quality,
            preview_size=self.config.preview_size,
        )
        self.rasterizer = Rasterizer(
            dpi=self.config.render_dpi,
            jpeg_quality=self.config.jpeg_quality,
        )
        self.cache = ResultCache(self.store, enabled=self.config.use_cache)
        self.dispatcher = AnalysisDispatcher(
            self.store,
            self.cache,
            service=service,
            service_factory=self._build_service,
        )
        self.reconciler = CandidateReconciler(
            project, self.store, self.normalizer
        )
        self.scheduler = BatchScheduler(
            self.reconciler,
            self.dispatcher,
            halt_on_quota=self.config.halt_on_quota,
            slow_call_warning_seconds=self.config.slow_call_warning_seconds,
            progress_callback=progress_callback,
        )

    @property
    def project(self) -> Project:
        return self.reconciler.project

    def _build_service(self) -> InferenceService:
        limiter = RateLimiter(
            min_interval=self.config.request_interval,
            max_retries=self.config.max_retries,
            quota_backoff=self.config.quota_backoff,
            transient_wait=self.config.transient_wait,
        )
        return GeminiClient(
            api_key=self.config.api_key,
            model=self.config.model,
            limiter=limiter,
        )

    # ─── Ingestion ────────────────────────────────────────────────────────

    async def ingest(self, paths: list[str]) -> list[Page]:
        """
        Convert input files and add their pages to the pending pool.

        Fingerprints are computed here, once; raw media goes to the media
        namespace and only a preview stays on the page record.

        Returns:
            The new pending pages, in input order.
        """
        pages: list[Page] = []
        for path in paths:
            raw_pages = await asyncio.to_thread(self.rasterizer.convert, path)
            for raw in raw_pages:
                pages.append(await self._to_page(raw))

        if pages:
            await self.reconciler.add_pages(pages)
        logger.info(
            f"Project {self.project.id}: ingested {len(pages)} page(s) "
            f"from {len(paths)} file(s)"
        )
        return pages

    async def _to_page(self, raw: RawPage) -> Page:
        page_id = new_page_id()
        if raw.is_text:
            page = Page(
                id=page_id,
                file_name=raw.file_name,
                content_hash=content_hash(raw.text),
                mime_type=raw.mime_type,
                text_preview=(raw.text or "")[:TEXT_PREVIEW_LENGTH],
                status=PageStatus.PENDING,
            )
            data = (raw.text or "").encode("utf-8")
        else:
            preview = await asyncio.to_thread(self.normalizer.preview, raw.data)
            page = Page(
                id=page_id,
                file_name=raw.file_name,
                content_hash=content_hash(raw.data),
                mime_type=raw.mime_type,
                image_preview=preview,
                status=PageStatus.PENDING,
            )
            data = raw.data

        await asyncio.to_thread(
            self.store.put_media, page_id, data, raw.mime_type
        )
        return page
