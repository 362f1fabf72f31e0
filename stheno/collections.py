from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence

from .content import Page
from .utils import extract_number_from_name, strip_number_prefix


class PageCollection(Sequence[Page]):
    """Sequence of Pages with query helpers for templates."""

    def __init__(self, pages: Iterable[Page]):
        self._pages = list(pages)

    def __iter__(self) -> Iterator[Page]:
        return iter(self._pages)

    def __len__(self) -> int:
        return len(self._pages)

    def __getitem__(self, item):
        if isinstance(item, slice):
            return PageCollection(self._pages[item])
        return self._pages[item]

    def group(self, name: str) -> PageCollection:
        return PageCollection(p for p in self._pages if p.group == name)

    def with_tag(self, tag: str) -> PageCollection:
        return PageCollection(p for p in self._pages if tag in p.tags)

    def drafts(self) -> PageCollection:
        return PageCollection(p for p in self._pages if p.draft)

    def published(self) -> PageCollection:
        return PageCollection(p for p in self._pages if not p.draft)

    def sorted(self, reverse: bool = True) -> PageCollection:
        """Sort by date, then ordering number, then name without prefixes.

        Args:
            reverse: Newest first when True (the default).
        """
        missing = float("inf") if reverse else 0

        def sort_key(p: Page):
            number = extract_number_from_name(p.path.stem)
            name_key = strip_number_prefix(p.path.stem).lower()
            return (p.date, number if number is not None else missing, name_key)

        return PageCollection(sorted(self._pages, key=sort_key, reverse=reverse))

    def latest(self, count: int = 5) -> PageCollection:
        return self.sorted()[:count]

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"PageCollection({len(self._pages)} pages)"


class TagCollection(Mapping[str, PageCollection]):
    """Mapping of tag name to PageCollection."""

    def __init__(self, mapping: Mapping[str, Iterable[Page]]):
        self._mapping = {k: PageCollection(v) for k, v in sorted(mapping.items())}

    def __getitem__(self, key: str) -> PageCollection:
        return self._mapping[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._mapping)

    def __len__(self) -> int:
        return len(self._mapping)

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"TagCollection({len(self._mapping)} tags)"


def listing_rows(pages: Iterable[Page]) -> list[tuple]:
    """Rows describing the site listing that templates can observe.

    A change in any row (a page added, removed, retitled, redated or
    retagged) changes the ``@collections`` dependency hash.
    """
    return [
        (p.url, p.title, p.date.isoformat(), sorted(p.tags), p.group, p.draft, p.description)
        for p in sorted(pages, key=lambda page: page.url)
    ]
