"""
Candidate Reconciler
====================
The only writer of a project's candidate collection and unprocessed pool.

Every mutation follows the same pattern:
    1. Deep-copy the project into a draft
    2. Apply the change to the draft
    3. Persist the draft in one store transaction
    4. Swap the draft in as the live project

A failed write therefore leaves both the store and the live project
untouched.

Integration of one analyzed page:
    source page + results → derived pages (split / rotate via the layout
    normalizer) → storage key per page → locate or create candidate →
    replace in place or append + sort → drop source from the pool once
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .database import ProjectStore
from .exceptions import MissingMediaError, ReconciliationError
from .hashing import content_hash
from .layout import LayoutNormalizer, derived_page_id
from .models import (
    UNKNOWN_CANDIDATE,
    AnalysisResult,
    Candidate,
    CandidateStatus,
    LayoutType,
    Page,
    PageStatus,
    Project,
    ProjectStatus,
)

logger = logging.getLogger(__name__)


def storage_key(candidate_id: str, source: Page) -> str:
    """
    Candidate key for a derived page.

    Unresolved candidates get a key unique to the source page so that two
    unrelated unknown pages never end up in the same placeholder.
    """
    if candidate_id and candidate_id != UNKNOWN_CANDIDATE:
        return candidate_id
    return f"{UNKNOWN_CANDIDATE}_{source.source_page_id or source.id}"


def candidate_name(key: str, source: Optional[Page] = None) -> str:
    if key.startswith(f"{UNKNOWN_CANDIDATE}_"):
        label = (source.file_name or source.id) if source else key
        return f"Unknown ({label})"
    return f"Candidate {key}"


class CandidateReconciler:
    """
    Owns the live Project and applies every change to it.

    Args:
        project: The project to manage.
        store: Persistent store (projects + media namespaces).
        normalizer: Layout normalizer for splits and rotations.
    """

    def __init__(
        self,
        project: Project,
        store: ProjectStore,
        normalizer: Optional[LayoutNormalizer] = None,
    ):
        self.project = project
        self.store = store
        self.normalizer = normalizer or LayoutNormalizer()

    # ─── Integration ──────────────────────────────────────────────────────

    async def integrate(
        self, source: Page, results: list[AnalysisResult]
    ) -> list[Page]:
        """
        Fold one page's analysis results into the candidate collection.

        Args:
            source: The pool page that was analyzed.
            results: Validated, whitelist-filtered results (non-empty).

        Returns:
            The derived pages, as filed.

        Raises:
            MissingMediaError: If a split/rotation needs media that is gone.
            NormalizationError: If the source image cannot be decoded.
            ReconciliationError: If ``results`` is empty.
        """
        if not results:
            raise ReconciliationError(
                f"No results to integrate for page {source.id}"
            )

        derived = await self._derive_pages(source, results)

        draft = self.project.model_copy(deep=True)
        touched: set[str] = set()
        for page in derived:
            key = page.candidate_id
            self._detach(draft, page.id, keep=key)
            cand = draft.find_candidate(key)
            if cand is None:
                cand = Candidate(
                    id=key,
                    project_id=draft.id,
                    name=candidate_name(key, source),
                    status=CandidateStatus.COMPLETED,
                )
                draft.candidates.append(cand)
                logger.info(f"Created candidate {key}")

            idx = cand.page_index(page.id)
            if idx >= 0:
                cand.pages[idx] = page
            else:
                cand.pages.append(page)
            cand.sort_pages()
            if cand.status in (CandidateStatus.PENDING, CandidateStatus.PROCESSING):
                cand.status = CandidateStatus.COMPLETED
            touched.add(key)

        draft.unprocessed_pages = [
            p for p in draft.unprocessed_pages if p.id != source.id
        ]
        await self._commit(draft)

        if source.id not in {p.id for p in derived}:
            await asyncio.to_thread(self.store.delete_media, source.id)

        logger.info(
            f"Integrated page {source.id} → {len(derived)} page(s) "
            f"in candidate(s) {', '.join(sorted(touched))}"
        )
        return derived

    async def _derive_pages(
        self, source: Page, results: list[AnalysisResult]
    ) -> list[Page]:
        kept = [r for r in results if not (r.side is not None and r.is_blank)]
        if not kept:
            # Nothing readable: still file one page for the source
            kept = [results[0].model_copy(update={
                "side": None, "layout_type": LayoutType.SINGLE,
            })]

        several = len(kept) > 1
        payload: Optional[bytes] = None
        pages: list[Page] = []
        used_ids: set[str] = set()

        for index, result in enumerate(kept):
            side = result.side if result.layout_type == LayoutType.SPREAD else None
            if side is not None:
                page_id = derived_page_id(source.id, side=side)
            elif several:
                page_id = derived_page_id(source.id, index=index)
            else:
                page_id = source.id
            if page_id in used_ids:
                page_id = derived_page_id(page_id, index=index)
            used_ids.add(page_id)

            page = source.model_copy(deep=True, update={
                "id": page_id,
                "source_page_id": source.source_page_id or source.id,
                "candidate_id": storage_key(result.candidate_id, source),
                "page_number": result.page_number,
                "part": result.part,
                "transcription": result.full_text,
                "visual_evidence": result.visual_evidence,
                "identified_tasks": list(result.identified_tasks),
                "layout_type": result.layout_type,
                "status": PageStatus.COMPLETED,
                "status_label": None,
                "force_rescan": False,
            })

            if source.is_digital:
                pages.append(page)
                continue

            transform = side is not None or result.rotation % 360 != 0
            if transform or page_id != source.id:
                if payload is None:
                    payload = await asyncio.to_thread(
                        self.store.get_media, source.id
                    )
                    if payload is None:
                        raise MissingMediaError(
                            f"No media stored for page {source.id}"
                        )

            if transform:
                normalized = await asyncio.to_thread(
                    self.normalizer.normalize, payload, result.rotation, side
                )
                page.mime_type = normalized.mime_type
                page.image_preview = normalized.preview
                if page_id == source.id:
                    page.rotation = (source.rotation + result.rotation) % 360
                else:
                    # a new page: fingerprinted from its own bytes
                    page.content_hash = content_hash(normalized.data)
                    page.rotation = 0
                await asyncio.to_thread(
                    self.store.put_media,
                    page_id, normalized.data, normalized.mime_type,
                )
            elif page_id != source.id:
                await asyncio.to_thread(
                    self.store.put_media, page_id, payload, source.mime_type
                )

            pages.append(page)

        return pages

    # ─── Manual Operations ────────────────────────────────────────────────

    async def move_page(self, page_id: str, target_id: str) -> Candidate:
        """
        Reassign a filed page to another candidate (created if absent).
        Remove and insert happen in the same persisted mutation.
        """
        target_id = (target_id or "").strip()
        if not target_id:
            raise ReconciliationError("Target candidate id is empty")

        draft = self.project.model_copy(deep=True)
        owner, page = draft.locate_page(page_id)
        if page is None:
            raise ReconciliationError(f"Page {page_id} not found")
        if owner is None:
            raise ReconciliationError(
                f"Page {page_id} has not been analyzed yet"
            )
        if owner.id == target_id:
            return owner

        self._detach(draft, page_id)
        target = draft.find_candidate(target_id)
        if target is None:
            target = Candidate(
                id=target_id,
                project_id=draft.id,
                name=candidate_name(target_id),
                status=CandidateStatus.COMPLETED,
            )
            draft.candidates.append(target)
        page.candidate_id = target_id
        target.pages.append(page)
        target.sort_pages()

        await self._commit(draft)
        logger.info(f"Moved page {page_id}: {owner.id} → {target_id}")
        return target

    async def merge_candidates(self, source_id: str, target_id: str) -> Candidate:
        """
        Fold every page of ``source_id`` into ``target_id`` and delete the
        source candidate. Refuses to merge a candidate into itself.
        """
        if source_id == target_id:
            raise ReconciliationError(
                f"Cannot merge candidate {source_id} into itself"
            )

        draft = self.project.model_copy(deep=True)
        source = draft.find_candidate(source_id)
        target = draft.find_candidate(target_id)
        if source is None:
            raise ReconciliationError(f"Candidate {source_id} not found")
        if target is None:
            raise ReconciliationError(f"Candidate {target_id} not found")

        for page in source.pages:
            page.candidate_id = target_id
            idx = target.page_index(page.id)
            if idx >= 0:
                target.pages[idx] = page
            else:
                target.pages.append(page)
        target.sort_pages()
        draft.candidates = [c for c in draft.candidates if c.id != source_id]

        await self._commit(draft)
        logger.info(
            f"Merged candidate {source_id} into {target_id} "
            f"({len(source.pages)} page(s))"
        )
        return target

    async def requeue_page(self, page_id: str, force: bool = False) -> Page:
        """
        Put a page back into the pool as pending (retry / rescan).

        Args:
            page_id: Page in the pool or in any candidate.
            force: Bypass the result cache on the next analysis.
        """
        draft = self.project.model_copy(deep=True)
        owner, page = draft.locate_page(page_id)
        if page is None:
            raise ReconciliationError(f"Page {page_id} not found")

        if owner is not None:
            self._detach(draft, page_id)
            page.candidate_id = None
            draft.unprocessed_pages.append(page)

        page.status = PageStatus.PENDING
        page.status_label = None
        page.force_rescan = force or page.force_rescan

        await self._commit(draft)
        logger.info(
            f"Requeued page {page_id}" + (" (forced rescan)" if force else "")
        )
        return page

    async def rotate_page(self, page_id: str) -> Page:
        """
        Rotate a page's media a quarter turn clockwise.
        The page keeps its id and its content hash.
        """
        owner, current = self.project.locate_page(page_id)
        if current is None:
            raise ReconciliationError(f"Page {page_id} not found")

        normalized = None
        if not current.is_digital:
            payload = await asyncio.to_thread(self.store.get_media, page_id)
            if payload is None:
                raise MissingMediaError(f"No media stored for page {page_id}")
            normalized = await asyncio.to_thread(
                self.normalizer.normalize, payload, 90
            )

        draft = self.project.model_copy(deep=True)
        _, page = draft.locate_page(page_id)
        page.rotation = (page.rotation + 90) % 360
        if normalized is not None:
            page.image_preview = normalized.preview
            page.mime_type = normalized.mime_type
            await asyncio.to_thread(
                self.store.put_media,
                page_id, normalized.data, normalized.mime_type,
            )

        await self._commit(draft)
        return page

    # ─── Pool / Status ────────────────────────────────────────────────────

    async def add_pages(self, pages: list[Page]):
        """Append freshly ingested pages to the pool."""
        draft = self.project.model_copy(deep=True)
        known = {p.id for p in draft.unprocessed_pages}
        for page in pages:
            if page.id in known:
                continue
            page.status = PageStatus.PENDING
            draft.unprocessed_pages.append(page)
            known.add(page.id)
        await self._commit(draft)

    async def reset_interrupted(self) -> list[str]:
        """
        Put pool pages left ``processing`` by an interrupted run back to
        pending.

        Returns:
            Ids of the reset pages.
        """
        stale = [
            p.id for p in self.project.unprocessed_pages
            if p.status == PageStatus.PROCESSING
        ]
        if not stale:
            return []

        draft = self.project.model_copy(deep=True)
        for page in draft.unprocessed_pages:
            if page.status == PageStatus.PROCESSING:
                page.status = PageStatus.PENDING
                page.status_label = None
        await self._commit(draft)
        logger.warning(
            f"Reset {len(stale)} interrupted page(s) to pending: "
            f"{', '.join(stale)}"
        )
        return stale

    async def mark_page(
        self,
        page_id: str,
        status: PageStatus,
        label: Optional[str] = None,
    ):
        """Set the status of a pool page."""
        draft = self.project.model_copy(deep=True)
        page = draft.find_unprocessed(page_id)
        if page is None:
            raise ReconciliationError(f"Page {page_id} is not in the pool")
        page.status = status
        page.status_label = label
        await self._commit(draft)

    async def set_rubric(self, rubric):
        draft = self.project.model_copy(deep=True)
        draft.rubric = rubric
        await self._commit(draft)

    async def set_status(self, status: ProjectStatus):
        if self.project.status == status:
            return
        draft = self.project.model_copy(deep=True)
        draft.status = status
        await self._commit(draft)

    # ─── Helpers ──────────────────────────────────────────────────────────

    def _detach(self, draft: Project, page_id: str, keep: Optional[str] = None):
        """
        Remove ``page_id`` from every candidate except ``keep``.
        Candidates left without pages are dropped.
        """
        emptied = []
        for cand in draft.candidates:
            if cand.id == keep:
                continue
            idx = cand.page_index(page_id)
            if idx < 0:
                continue
            cand.pages.pop(idx)
            logger.debug(f"Detached page {page_id} from candidate {cand.id}")
            if not cand.pages:
                emptied.append(cand.id)
        if emptied:
            draft.candidates = [
                c for c in draft.candidates if c.id not in emptied
            ]

    async def _commit(self, draft: Project):
        await asyncio.to_thread(self.store.put_project, draft)
        self.project = draft
