"""Page range computation from detected first-page indices."""

from collections.abc import Sequence
from dataclasses import dataclass

from src.errors import ValidationError


@dataclass(frozen=True)
class PageRange:
    """An inclusive, 1-based page range."""

    start: int
    end: int

    @property
    def page_count(self) -> int:
        return self.end - self.start + 1

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end}


def validate_first_pages(first_pages: Sequence[int], total_pages: int) -> None:
    """Check that first-page indices are 1-based, in range and strictly increasing.

    Args:
        first_pages: Candidate first-page indices.
        total_pages: Page count of the source document.

    Raises:
        ValidationError: Naming the first rule that is violated.
    """
    if isinstance(total_pages, bool) or not isinstance(total_pages, int) or total_pages <= 0:
        raise ValidationError(
            "total_pages must be a positive integer", {"total_pages": total_pages}
        )

    previous: int | None = None
    for position, page in enumerate(first_pages):
        if isinstance(page, bool) or not isinstance(page, int) or page <= 0:
            raise ValidationError(
                "pages must contain positive 1-based integers",
                {"position": position, "page": page},
            )
        if page > total_pages:
            raise ValidationError(
                "pages contains values out of range",
                {"page": page, "total_pages": total_pages},
            )
        if previous is not None:
            if page == previous:
                raise ValidationError("pages contains duplicates", {"page": page})
            if page < previous:
                raise ValidationError(
                    "pages must be sorted in ascending order",
                    {"page": page, "previous": previous},
                )
        previous = page


def compute_ranges(first_pages: Sequence[int], total_pages: int) -> list[PageRange]:
    """Turn sorted first-page indices into contiguous page ranges.

    Each range ends on the page before the next first page; the last range
    ends on ``total_pages``. An empty sequence yields the whole document.

    Args:
        first_pages: Strictly increasing 1-based first-page indices.
        total_pages: Page count of the source document.

    Returns:
        Contiguous ranges covering the document from the first index on.

    Raises:
        ValidationError: If the indices or the page count are invalid.

    Example:
        >>> [r.to_dict() for r in compute_ranges([1, 3], 4)]
        [{'start': 1, 'end': 2}, {'start': 3, 'end': 4}]
    """
    validate_first_pages(first_pages, total_pages)

    if not first_pages:
        return [PageRange(1, total_pages)]

    ranges: list[PageRange] = []
    for i, start in enumerate(first_pages):
        end = first_pages[i + 1] - 1 if i + 1 < len(first_pages) else total_pages
        ranges.append(PageRange(start, end))
    return ranges
