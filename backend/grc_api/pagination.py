"""
Query-string pagination and sort helpers shared by list endpoints.

Out-of-range ``per_page`` and unknown ``sort``/``order`` values fall back to
the endpoint defaults instead of failing.
"""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Query
from sqlalchemy import Select

DEFAULT_PER_PAGE = 20


@dataclass
class Page:
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page

    def apply(self, q: Select) -> Select:
        return q.offset(self.offset).limit(self.per_page)


def paginate(cap: int = 100):
    """Dependency factory: ``page: Page = Depends(paginate(100))``."""
    def _dep(
        page: int = Query(1),
        per_page: int = Query(DEFAULT_PER_PAGE),
    ) -> Page:
        if page < 1:
            page = 1
        if per_page < 1 or per_page > cap:
            per_page = DEFAULT_PER_PAGE
        return Page(page=page, per_page=per_page)
    return _dep


def resolve_sort(sort: str | None, allowed: dict, default: str):
    """Map a ``sort`` query value to a column from the allow-list."""
    return allowed.get(sort or "", allowed[default])


def resolve_order(order: str | None, default: str = "desc") -> str:
    value = (order or "").lower()
    return value if value in ("asc", "desc") else default


def order_by(column, direction: str):
    return column.asc() if direction == "asc" else column.desc()
