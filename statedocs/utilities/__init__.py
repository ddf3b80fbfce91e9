"""statedocs Utilities — shared helpers."""

from statedocs.utilities.pagination import PageInfo, paginate, parse_sort

__all__ = ["PageInfo", "paginate", "parse_sort"]
