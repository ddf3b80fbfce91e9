"""
statedocs Pagination — Page arithmetic, navigation links and sort parsing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from statedocs.engine.errors import StateDocsBadRequestError
from statedocs.storage.base import ASCENDING, DESCENDING

DEFAULT_SORT: List[Tuple[str, int]] = [("_id", ASCENDING)]


@dataclass(frozen=True)
class PageInfo:
    count: int
    page: int
    per_page: int
    last_page: int

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.per_page

    @property
    def limit(self) -> int:
        return self.per_page

    @property
    def has_next(self) -> bool:
        return self.count > self.skip + self.limit

    @property
    def has_prev(self) -> bool:
        return self.skip > 0

    def nav(self) -> Dict[str, int]:
        """{first, last, previous?, next?} page numbers."""
        links = {"first": 1, "last": self.last_page}
        if self.page > 1:
            links["previous"] = self.page - 1
        if self.page < self.last_page:
            links["next"] = self.page + 1
        return links


def _positive_int(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise StateDocsBadRequestError(f"'{name}' must be an integer, got {value!r}", parameter=name)
    if number < 1:
        raise StateDocsBadRequestError(f"'{name}' must be >= 1, got {number}", parameter=name)
    return number


def paginate(
    count: int,
    pagination: Optional[Mapping[str, Any]] = None,
    default_per_page: int = 100,
    max_per_page: int = 1000,
) -> PageInfo:
    """
    Compute the page window for count results.

    pagination accepts "page" and "perPage" (or "per_page"). The page is
    clamped to the last page so skip never runs past the final window.
    """
    pagination = pagination or {}
    per_page = _positive_int("perPage", pagination.get("perPage", pagination.get("per_page")))
    per_page = min(per_page or default_per_page, max_per_page)
    page = _positive_int("page", pagination.get("page")) or 1

    last_page = max(1, math.ceil(count / per_page))
    return PageInfo(count=count, page=min(page, last_page), per_page=per_page, last_page=last_page)


def parse_sort(
    sort: Union[None, str, List[Tuple[str, int]]],
    state: str,
) -> List[Tuple[str, int]]:
    """
    Turn "-data.name,_id" into [("states.<state>.data.name", -1), ("_id", 1)].

    "data.*" fields are scoped to the requested state; "id" means "_id".
    An _id tiebreaker is appended so paging stays stable.
    """
    if not sort:
        return list(DEFAULT_SORT)

    if isinstance(sort, str):
        fields: List[Tuple[str, int]] = []
        for raw in sort.split(","):
            raw = raw.strip()
            if not raw:
                continue
            direction = DESCENDING if raw.startswith("-") else ASCENDING
            fields.append((raw.lstrip("+-"), direction))
    else:
        fields = list(sort)

    result: List[Tuple[str, int]] = []
    for field, direction in fields:
        if field == "id":
            field = "_id"
        elif field.startswith("data."):
            field = f"states.{state}.{field}"
        result.append((field, direction))

    if not any(field == "_id" for field, _ in result):
        result.append(("_id", ASCENDING))
    return result
