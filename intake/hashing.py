"""
Content Hasher
==============
Fuzzy fingerprint of a page's raw bytes or extracted text.

Large payloads are sampled from three fixed windows instead of being hashed
in full. The fingerprint is an identity for caching and dedup, not a
security digest; an occasional collision only costs a wrong cache hit that a
forced rescan repairs.
"""

from __future__ import annotations

import hashlib
import uuid
from typing import Union

SAMPLE_THRESHOLD = 2000
WINDOW = 500
DIGEST_LENGTH = 16


def _sample(data: bytes) -> bytes:
    """Pick the start, middle and end windows of a large payload."""
    n = len(data)
    if n <= SAMPLE_THRESHOLD:
        return data
    mid = n // 2
    return (
        data[WINDOW:2 * WINDOW]
        + data[mid:mid + WINDOW]
        + data[n - 2 * WINDOW:n - WINDOW]
    )


def content_hash(data: Union[bytes, str, None]) -> str:
    """
    Compute the content fingerprint of a payload.

    Args:
        data: Raw media bytes or extracted text.

    Returns:
        A 16 character hex token. Empty input yields a random token so that
        ingestion never fails on it.
    """
    if not data:
        return uuid.uuid4().hex[:DIGEST_LENGTH]

    if isinstance(data, str):
        data = data.encode("utf-8")

    digest = hashlib.sha256()
    digest.update(str(len(data)).encode("ascii"))
    digest.update(b":")
    digest.update(_sample(data))
    return digest.hexdigest()[:DIGEST_LENGTH]

