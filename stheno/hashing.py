"""Content and file hashing for change detection.

All hashes are SHA-256 hex digests prefixed with ``sha256-`` so the
algorithm can change later without ambiguity in old manifests.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from pathlib import Path
from typing import Any

HASH_PREFIX = "sha256-"


def hash_text(*parts: str) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        # Separator so ("ab", "c") and ("a", "bc") differ.
        digest.update(b"\0")
    return f"{HASH_PREFIX}{digest.hexdigest()}"


def _json_default(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def content_hash(body: str, frontmatter: Mapping[str, Any]) -> str:
    """Hash a page's source body together with its frontmatter.

    Frontmatter is serialized with sorted keys so that reordering fields in
    the YAML block does not count as a change.

    Args:
        body: Source body without the frontmatter block.
        frontmatter: Parsed frontmatter mapping.

    Returns:
        Prefixed SHA-256 digest.
    """
    encoded = json.dumps(
        dict(frontmatter), sort_keys=True, default=_json_default, ensure_ascii=False
    )
    return hash_text(body, encoded)


def file_hash(path: Path) -> str | None:
    """Hash a file's bytes.

    Returns:
        Prefixed SHA-256 digest, or None when the file cannot be read.
    """
    try:
        data = path.read_bytes()
    except OSError:
        return None
    return f"{HASH_PREFIX}{hashlib.sha256(data).hexdigest()}"


def listing_hash(rows: Iterable[Iterable[Any]]) -> str:
    """Hash an ordered listing, e.g. the site-wide page index."""
    return hash_text(
        *(json.dumps(list(row), default=_json_default, sort_keys=True) for row in rows)
    )
