"""
Core — Pagination

Standard paginator for service-layer list queries, with a default page
size and a hard max cap.

@file core/pagination.py
"""

from django.core.paginator import Page, Paginator

from core.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE


def paginate(object_list, *, page=1, page_size: int | None = None) -> Page:
    """Return one page of ``object_list``; out-of-range pages clamp to the last."""
    size = min(max(1, page_size or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
    return Paginator(object_list, size).get_page(page)
