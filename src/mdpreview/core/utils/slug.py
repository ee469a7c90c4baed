"""Slug and heading anchor generation"""

import re


def slugify(text: str) -> str:
    """Convert text to a lowercase, hyphen-separated URL-safe slug."""
    text = text.lower()
    text = re.sub(r'[^\w\s-]', '', text)
    text = re.sub(r'[\s_]+', '-', text)
    return re.sub(r'-+', '-', text).strip('-')


class AnchorRegistry:
    """Hands out per-document heading anchors, suffixing repeats with -1, -2, ..."""

    def __init__(self):
        self._counts: dict[str, int] = {}
        self._taken: set[str] = set()

    def anchor(self, text: str) -> str:
        base = slugify(text) or "section"
        n = self._counts.get(base, 0)
        candidate = base if n == 0 else f"{base}-{n}"
        # a literal heading like "Intro 1" may already own "intro-1"
        while candidate in self._taken:
            n += 1
            candidate = f"{base}-{n}"
        self._counts[base] = n + 1
        self._taken.add(candidate)
        return candidate
