from __future__ import annotations

import logging
import os
import re
from typing import Iterable
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)


STORAGE_PUBLIC_BASE_URL = os.getenv(
    "STORAGE_PUBLIC_BASE_URL", "https://storage.googleapis.com"
)

ABSENCE_MARKERS = {"", "null", "none", "undefined"}

_SCHEME_RE = re.compile(r"https?://", re.IGNORECASE)
_URL_SAFE_CHARS = ":/?#[]@!$&'()*+,;=~"


def is_absent_reference(reference: object) -> bool:
    if reference is None:
        return True
    if not isinstance(reference, str):
        return False
    return reference.strip().lower() in ABSENCE_MARKERS


def _normalize_encoding(value: str) -> str:
    return quote(unquote(value), safe=_URL_SAFE_CHARS)


def _compose(base_url: str, bucket: str, name: str) -> str:
    name = name.lstrip("/")
    return f"{base_url.rstrip('/')}/{bucket.strip('/')}/{_normalize_encoding(name)}"


def repair_nested_url(url: str) -> str:
    """Drop everything before a second scheme marker.

    ``https://host/bucket/https://host/bucket/clip.mp4`` becomes
    ``https://host/bucket/clip.mp4``.
    """
    nested = None
    for match in _SCHEME_RE.finditer(url):
        if match.start() > 0:
            nested = match.start()
    if nested is None:
        return url
    logger.debug("Repaired nested asset URL %s", url)
    return url[nested:]


def resolve_location(
    reference: str | None,
    bucket: str,
    base_url: str | None = None,
) -> str | None:
    """Turn an asset reference into one canonical fetchable URL.

    Returns None when there is no reference at all.
    """
    if is_absent_reference(reference):
        return None

    reference = str(reference).strip()
    base_url = base_url or STORAGE_PUBLIC_BASE_URL

    if _SCHEME_RE.match(reference):
        return _normalize_encoding(repair_nested_url(reference))

    if reference.startswith("gs://"):
        parts = reference[5:].split("/", 1)
        if len(parts) == 2 and parts[0] and parts[1]:
            return _compose(base_url, parts[0], parts[1])
        return None

    return _compose(base_url, bucket, reference)


def candidate_locations(
    reference: str | None,
    buckets: Iterable[str],
    base_url: str | None = None,
) -> list[str]:
    """Resolved URLs to try for a reference, one per bucket in the fallback chain."""
    candidates: list[str] = []
    for bucket in buckets:
        url = resolve_location(reference, bucket, base_url=base_url)
        if url and url not in candidates:
            candidates.append(url)
    return candidates
