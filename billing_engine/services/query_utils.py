from __future__ import annotations

import enum
from typing import Any, TypeVar

from fastapi import HTTPException
from sqlalchemy.orm import Query

E = TypeVar("E", bound=enum.Enum)


def apply_ordering(
    query: Query,
    order_by: str,
    order_dir: str,
    allowed_columns: dict[str, Any],
) -> Query:
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "invalid_order_by",
                "message": f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
            },
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query: Query, limit: int, offset: int) -> Query:
    return query.limit(limit).offset(offset)


def validate_enum(value: str, enum_cls: type[E], label: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in enum_cls)
        raise HTTPException(
            status_code=400,
            detail={
                "code": f"invalid_{label}",
                "message": f"Invalid {label}. Allowed: {allowed}",
            },
        ) from exc
