import math

from fastapi import HTTPException

MAX_LIMIT = 200


def page_window(page: int, limit: int) -> tuple[int, int]:
    """Validate page/limit query params and return (limit, offset)."""
    if page < 1:
        raise HTTPException(status_code=400, detail="page must be >= 1")
    if limit <= 0 or limit > MAX_LIMIT:
        raise HTTPException(status_code=400, detail=f"limit must be between 1 and {MAX_LIMIT}")
    return limit, (page - 1) * limit


def pagination_meta(page: int, limit: int, total: int) -> dict:
    total = int(total or 0)
    return {
        "current_page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "total_items": total,
        "items_per_page": limit,
    }
