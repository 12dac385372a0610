"""Canned rejection reasons and their paginated presentation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class Reason:
    code: str
    label: str


REJECTION_REASONS: tuple[Reason, ...] = (
    Reason("invalid_document", "invalid document"),
    Reason("unreadable_media", "unreadable or blurry media"),
    Reason("name_mismatch", "name does not match records"),
    Reason("expired_document", "document has expired"),
    Reason("face_mismatch", "video does not match the document"),
    Reason("incomplete_submission", "incomplete submission"),
    Reason("duplicate_submission", "duplicate submission"),
    Reason("amount_mismatch", "amount does not match the transfer"),
    Reason("suspected_fraud", "suspected fraud"),
)


@dataclass(frozen=True)
class ReasonPage:
    page: int
    page_size: int
    total_pages: int
    items: tuple[Reason, ...]

    @property
    def has_previous(self) -> bool:
        return self.page > 0

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages - 1


def page_count(page_size: int, catalog: Sequence[Reason] = REJECTION_REASONS) -> int:
    if page_size <= 0:
        raise ValueError("Page size must be greater than zero")
    return max(1, -(-len(catalog) // page_size))


def reason_page(page: int, page_size: int, catalog: Sequence[Reason] = REJECTION_REASONS) -> ReasonPage:
    """Return page *page* (zero-based, clamped into range) of *catalog*."""

    total = page_count(page_size, catalog)
    current = min(max(page, 0), total - 1)
    start = current * page_size
    return ReasonPage(
        page=current,
        page_size=page_size,
        total_pages=total,
        items=tuple(catalog[start : start + page_size]),
    )


def find_reason(code: str, catalog: Sequence[Reason] = REJECTION_REASONS) -> Reason | None:
    for reason in catalog:
        if reason.code == code:
            return reason
    return None
