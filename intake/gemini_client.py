"""
Gemini Inference Client
=======================
Async client for the page-interpretation service (google-genai).

All calls go through a RateLimiter:
    - At least ``min_interval`` seconds between requests
    - Quota errors (429) retried with exponential backoff
    - Transient errors (5xx, network) retried after a short wait
    - Client errors (400/401/403/404) and malformed output fail fast

Retries are bounded; there is never an open-ended retry loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Awaitable, Callable, Optional, TypeVar

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .exceptions import (
    AnalysisError,
    AuthenticationError,
    MalformedResponseError,
    QuotaExhaustedError,
    TransientServiceError,
)
from .models import TEXT_MIME_TYPE

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MODEL = "gemini-2.5-flash"

SYSTEM_INSTRUCTION = (
    "Transcribe the handwritten or typed exam answer exactly as written. "
    "Return one entry per logical page. Report the candidate number written "
    "on the page, the page number, the exam part, the clockwise rotation "
    "needed to make the page upright, and whether the image is a single "
    "page or a two-page spread. List every task/subtask the page answers."
)

RESPONSE_SCHEMA = types.Schema(
    type=types.Type.ARRAY,
    items=types.Schema(
        type=types.Type.OBJECT,
        properties={
            "candidateId": types.Schema(type=types.Type.STRING),
            "pageNumber": types.Schema(type=types.Type.INTEGER),
            "part": types.Schema(
                type=types.Type.STRING, enum=["Part 1", "Part 2"]
            ),
            "fullText": types.Schema(type=types.Type.STRING),
            "visualEvidence": types.Schema(type=types.Type.STRING),
            "rotation": types.Schema(type=types.Type.INTEGER),
            "layoutType": types.Schema(
                type=types.Type.STRING, enum=["single", "spread"]
            ),
            "sideInSpread": types.Schema(
                type=types.Type.STRING, enum=["LEFT", "RIGHT"]
            ),
            "identifiedTasks": types.Schema(
                type=types.Type.ARRAY,
                items=types.Schema(
                    type=types.Type.OBJECT,
                    properties={
                        "taskNumber": types.Schema(type=types.Type.STRING),
                        "subTask": types.Schema(type=types.Type.STRING),
                    },
                    required=["taskNumber"],
                ),
            ),
        },
        required=[
            "layoutType", "fullText", "identifiedTasks",
            "rotation", "pageNumber",
        ],
    ),
)


def map_api_error(error: genai_errors.APIError) -> AnalysisError:
    """Translate a google-genai API error into the intake error taxonomy."""
    code = getattr(error, "code", None) or 0
    status = str(getattr(error, "status", "") or "")
    message = getattr(error, "message", None) or str(error)

    if code == 429 or "RESOURCE_EXHAUSTED" in status:
        return QuotaExhaustedError(f"Quota exhausted: {message}")
    if code in (401, 403):
        return AuthenticationError(f"Authentication failed: {message}")
    if code >= 500 or code == 408:
        return TransientServiceError(f"Service error {code}: {message}")
    return AnalysisError(f"Request rejected ({code}): {message}")


# ─── Rate Limiter ────────────────────────────────────────────────────────────


class RateLimiter:
    """
    Serializes calls and applies bounded retry with backoff.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        max_retries: int = 2,
        quota_backoff: float = 5.0,
        transient_wait: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self.max_retries = max_retries
        self.quota_backoff = quota_backoff
        self.transient_wait = transient_wait
        self._sleep = sleep
        self._last_request = 0.0
        self._lock: Optional[asyncio.Lock] = None

    async def schedule(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` under the rate limit.

        Raises:
            The last error when retries are exhausted, or the first
            non-retryable error.
        """
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            wait = self.min_interval - (time.monotonic() - self._last_request)
            if wait > 0:
                await self._sleep(wait)

            attempt = 0
            backoff = self.quota_backoff
            while True:
                try:
                    return await fn()
                except QuotaExhaustedError:
                    attempt += 1
                    if attempt > self.max_retries:
                        raise
                    logger.warning(
                        f"Quota error, waiting {backoff:.0f}s "
                        f"(attempt {attempt}/{self.max_retries})"
                    )
                    await self._sleep(backoff)
                    backoff *= 2
                except TransientServiceError as e:
                    attempt += 1
                    if attempt > self.max_retries:
                        raise
                    logger.warning(
                        f"Transient error, retrying in "
                        f"{self.transient_wait:.0f}s: {e}"
                    )
                    await self._sleep(self.transient_wait)
                finally:
                    self._last_request = time.monotonic()


# ─── Client ──────────────────────────────────────────────────────────────────


class GeminiClient:
    """
    Inference service backed by the Gemini API.

    ``analyze`` returns the raw response text; schema validation happens in
    the dispatcher.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        limiter: Optional[RateLimiter] = None,
        temperature: float = 0.0,
    ):
        self.api_key = (
            api_key
            or os.environ.get("GEMINI_API_KEY")
            or os.environ.get("GOOGLE_API_KEY")
        )
        if not self.api_key:
            raise AuthenticationError(
                "GEMINI_API_KEY or GOOGLE_API_KEY must be set in the environment"
            )
        self.model = model
        self.temperature = temperature
        self.limiter = limiter or RateLimiter()
        self.client = genai.Client(api_key=self.api_key)
        logger.info(f"Gemini client initialized (model={self.model})")

    async def analyze(
        self,
        payload: bytes,
        mime_type: str,
        criteria: Optional[list[dict]] = None,
    ) -> str:
        """
        Request the interpretation of one page.

        Args:
            payload: Raw image bytes, or UTF-8 text for digital documents.
            mime_type: MIME type of ``payload``.
            criteria: Rubric criteria as
                ``{taskNumber, subTask, description}``, if a rubric exists.

        Returns:
            Raw response text (expected to be a JSON array).
        """
        contents = self._build_contents(payload, mime_type, criteria)
        config = types.GenerateContentConfig(
            system_instruction=SYSTEM_INSTRUCTION,
            temperature=self.temperature,
            response_mime_type="application/json",
            response_schema=RESPONSE_SCHEMA,
        )

        async def call() -> str:
            try:
                response = await self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config,
                )
            except genai_errors.APIError as e:
                raise map_api_error(e) from e
            except (asyncio.TimeoutError, OSError) as e:
                raise TransientServiceError(f"Network error: {e}") from e

            text = (response.text or "").strip()
            if not text:
                raise MalformedResponseError("Empty response from service")
            return text

        logger.debug(f"Requesting analysis ({mime_type}, {len(payload)} bytes)")
        return await self.limiter.schedule(call)

    def _build_contents(
        self,
        payload: bytes,
        mime_type: str,
        criteria: Optional[list[dict]],
    ) -> list[types.Content]:
        if criteria:
            lines = ["Valid task ids (use only these):"]
            for c in criteria:
                label = f"{c['taskNumber']}{c.get('subTask', '')}"
                if c.get("description"):
                    label += f": {c['description']}"
                lines.append(f"- {label}")
            guide = "\n".join(lines)
        else:
            guide = "No task id restriction."

        if mime_type == TEXT_MIME_TYPE:
            body = types.Part.from_text(
                text="DOCUMENT:\n" + payload.decode("utf-8", errors="replace")
            )
        else:
            body = types.Part.from_bytes(data=payload, mime_type=mime_type)

        return [
            types.Content(
                role="user",
                parts=[types.Part.from_text(text=guide), body],
            )
        ]
