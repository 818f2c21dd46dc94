from __future__ import annotations

import re
import unicodedata
from typing import Iterable

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

RESERVED_SLUGS = frozenset({"index"})


def slug_base(title: str | None) -> str:
    """Lowercase, collapse every non-alphanumeric run to ``-`` and trim."""
    normalized = unicodedata.normalize("NFKD", title or "").encode("ascii", "ignore").decode("ascii")
    return _NON_ALNUM.sub("-", normalized.lower()).strip("-")


def slugify(title: str | None, index: int) -> str:
    """Slug for the document at ``index``; ``document-<index>`` when the title has nothing usable."""
    return slug_base(title) or f"document-{index}"


def assign_slugs(titles: Iterable[str | None]) -> list[str]:
    """Slug every title of one publish run, suffixing ``-2``, ``-3``... on collisions."""
    taken: set[str] = set(RESERVED_SLUGS)
    slugs: list[str] = []
    for index, title in enumerate(titles):
        base = slugify(title, index)
        slug = base
        counter = 2
        while slug in taken:
            slug = f"{base}-{counter}"
            counter += 1
        taken.add(slug)
        slugs.append(slug)
    return slugs
