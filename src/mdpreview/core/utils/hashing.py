"""SHA-256 content hashing for change detection and render output identity"""

import hashlib
from collections.abc import Iterable


def sha256(content: str) -> str:
    """Return hex-encoded SHA-256 hash of content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def sha256_parts(parts: Iterable[str]) -> str:
    """Hash a sequence of fragments; fragment boundaries are part of the hash."""
    h = hashlib.sha256()
    for part in parts:
        data = part.encode("utf-8")
        h.update(len(data).to_bytes(8, "big"))
        h.update(data)
    return h.hexdigest()
