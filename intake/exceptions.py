"""
Pipeline Errors
===============
Typed failures raised inside the intake pipeline.

Every error carries a short human-readable ``label`` which the scheduler
copies onto the failing page's ``status_label``.

Hierarchy:
    IntakeError
    ├── AnalysisError
    │   ├── TransientServiceError
    │   ├── QuotaExhaustedError
    │   ├── MalformedResponseError
    │   └── AuthenticationError
    ├── MissingMediaError
    ├── NormalizationError
    ├── ConversionError
    ├── ReconciliationError
    └── ProjectNotFoundError
"""

from __future__ import annotations


class IntakeError(Exception):
    """Base exception for all pipeline errors."""

    label = "Failed"

    def __init__(self, message: str = "", label: str | None = None):
        super().__init__(message or self.label)
        if label:
            self.label = label


# ─── Inference Service ────────────────────────────────────────────────────────


class AnalysisError(IntakeError):
    """The inference service did not produce a usable result."""

    label = "Analysis failed"


class TransientServiceError(AnalysisError):
    """Network failure, timeout or 5xx from the inference service."""

    label = "Service unavailable"


class QuotaExhaustedError(AnalysisError):
    """Rate limit / quota exhausted (HTTP 429, RESOURCE_EXHAUSTED)."""

    label = "Quota exhausted"


class MalformedResponseError(AnalysisError):
    """The response could not be parsed or failed schema validation."""

    label = "Malformed response"


class AuthenticationError(AnalysisError):
    """Missing or rejected API credentials."""

    label = "Authentication failed"


# ─── Media / Normalization ────────────────────────────────────────────────────


class MissingMediaError(IntakeError):
    """The media namespace has no bytes for a page that needs them."""

    label = "Missing media"


class NormalizationError(IntakeError):
    """An image could not be decoded, rotated or split."""

    label = "Unreadable image"


class ConversionError(IntakeError):
    """An input file could not be rasterized or text-extracted."""

    label = "Unsupported file"


# ─── Reconciliation ───────────────────────────────────────────────────────────


class ReconciliationError(IntakeError):
    """An invalid candidate merge or page move was requested."""

    label = "Invalid operation"


class ProjectNotFoundError(IntakeError):
    """No project with the requested id exists in the store."""

    label = "Not found"
