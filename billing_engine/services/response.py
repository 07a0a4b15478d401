from typing import Any


def list_response(
    items: list, limit: int, offset: int, *, total: int | None = None
) -> dict:
    return {
        "items": items,
        "count": len(items),
        "limit": limit,
        "offset": offset,
        "total": total if total is not None else len(items),
    }


def success_response(data: Any) -> dict:
    return {"success": True, "data": data}


class ListResponseMixin:
    @classmethod
    def list_response(cls, db, *args, limit: int, offset: int, **kwargs) -> dict:
        result = cls.list(db, *args, limit=limit, offset=offset, **kwargs)  # type: ignore[attr-defined]
        if isinstance(result, tuple):
            items, total = result
        else:
            items, total = result, len(result)
        return list_response(items, limit, offset, total=total)
