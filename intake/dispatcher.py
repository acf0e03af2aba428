"""
Analysis Dispatcher
===================
Turns one pending page into a list of validated AnalysisResults.

Flow per page:
    cache lookup (unless forced) → media load → inference service →
    schema validation + normalization → cache write → rubric filter

The cache holds results before rubric filtering; the whitelist is applied
on every read so a changed rubric never needs a cache flush.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

from .cache import ResultCache
from .database import ProjectStore
from .exceptions import MissingMediaError
from .models import AnalysisResult, Page, Rubric
from .validator import (
    ResponseValidator,
    apply_whitelist,
    rubric_criteria,
    rubric_whitelist,
)

logger = logging.getLogger(__name__)


class InferenceService(Protocol):
    """Anything that can interpret a page payload into raw response text."""

    async def analyze(
        self,
        payload: bytes,
        mime_type: str,
        criteria: Optional[list[dict]] = None,
    ) -> str:
        ...


class AnalysisDispatcher:
    """
    Sends pages to the inference service with caching and validation.

    Args:
        store: Project store (media namespace).
        cache: Result cache.
        service: Inference service; created on first use from
            ``service_factory`` when omitted.
        service_factory: Zero-argument callable building the service.
    """

    def __init__(
        self,
        store: ProjectStore,
        cache: ResultCache,
        service: Optional[InferenceService] = None,
        service_factory: Optional[Callable[[], InferenceService]] = None,
    ):
        self.store = store
        self.cache = cache
        self._service = service
        self._service_factory = service_factory
        self.validator = ResponseValidator()

    @property
    def service(self) -> InferenceService:
        if self._service is None:
            if self._service_factory is None:
                raise RuntimeError("No inference service configured")
            self._service = self._service_factory()
        return self._service

    async def analyze(
        self, page: Page, rubric: Optional[Rubric] = None
    ) -> list[AnalysisResult]:
        """
        Analyze a page.

        Cached results describe the fingerprinted bytes. A page whose stored
        media was already turned by ``page.rotation`` gets its results'
        rotation re-expressed relative to that media.

        Args:
            page: Page to analyze; ``force_rescan`` bypasses the cache.
            rubric: Active rubric, if any.

        Returns:
            Non-empty list of results, filtered by the rubric whitelist.

        Raises:
            MissingMediaError: If the store has no payload for the page.
            AnalysisError: Any typed service or validation failure.
        """
        whitelist = rubric_whitelist(rubric)
        turned = 0 if page.is_digital else page.rotation % 360

        if not page.force_rescan:
            cached = await asyncio.to_thread(self.cache.get, page.content_hash)
            if cached is not None:
                logger.info(f"Page {page.id}: cache hit ({page.content_hash})")
                return apply_whitelist(_turn(cached, -turned), whitelist)
        else:
            logger.info(f"Page {page.id}: forced rescan, cache bypassed")

        payload = await asyncio.to_thread(self.store.get_media, page.id)
        if not payload:
            raise MissingMediaError(f"No media stored for page {page.id}")

        text = await self.service.analyze(
            payload,
            page.mime_type,
            rubric_criteria(rubric),
        )
        results = self.validator.validate(text)

        await asyncio.to_thread(
            self.cache.put, page.content_hash, _turn(results, turned)
        )
        logger.info(
            f"Page {page.id}: analyzed, {len(results)} interpretation(s)"
        )
        return apply_whitelist(results, whitelist)


def _turn(results: list[AnalysisResult], degrees: int) -> list[AnalysisResult]:
    """Add ``degrees`` to every result's clockwise rotation."""
    if degrees % 360 == 0:
        return results
    return [
        r.model_copy(update={"rotation": (r.rotation + degrees) % 360})
        for r in results
    ]
