"""Ordered keyset fetches guarded by a declared composite-index registry.

The relational store will run any query, but production deployments only
declare a fixed set of composite indexes (see the alembic migration). Queries
whose equality filters and sort field are not covered by a declared index are
rejected with ``MissingIndexError`` so callers can fall back to a bounded
in-memory scan instead of a full partition sort.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from services.errors import InvalidCursorError, MissingIndexError


IN_FILTER_MAX_VALUES = 10


def _parse_index_spec(spec: str) -> Tuple[FrozenSet[str], str]:
    parts = [part.strip() for part in spec.split("+") if part.strip()]
    if not parts:
        raise ValueError(f"Empty composite index declaration: '{spec}'")
    return frozenset(parts[:-1]), parts[-1]


@dataclass
class IndexRegistry:
    """Declared composite indexes, keyed by collection."""

    declared: Dict[str, FrozenSet[Tuple[FrozenSet[str], str]]] = field(default_factory=dict)

    @classmethod
    def from_settings(cls) -> "IndexRegistry":
        return cls.from_specs(
            {
                "generations": settings.GENERATION_COMPOSITE_INDEXES,
                "public_generations": settings.PUBLIC_GENERATION_COMPOSITE_INDEXES,
            }
        )

    @classmethod
    def from_specs(cls, specs: Dict[str, Iterable[str]]) -> "IndexRegistry":
        return cls(
            declared={
                collection: frozenset(_parse_index_spec(spec) for spec in entries)
                for collection, entries in specs.items()
            }
        )

    def supports(self, collection: str, equality_fields: Iterable[str], sort_by: str) -> bool:
        fields = frozenset(equality_fields)
        if not fields:
            return True
        return (fields, sort_by) in self.declared.get(collection, frozenset())

    def require(self, collection: str, equality_fields: Iterable[str], sort_by: str) -> None:
        fields = tuple(sorted(equality_fields))
        if not self.supports(collection, fields, sort_by):
            raise MissingIndexError(collection, fields, sort_by)


@dataclass(frozen=True)
class CursorPosition:
    sort_by: str
    sort_value: Any
    record_id: str


def encode_cursor(sort_by: str, sort_value: Any, record_id: str) -> str:
    if isinstance(sort_value, datetime):
        encoded_value: Dict[str, Any] = {"t": "dt", "v": sort_value.isoformat()}
    else:
        encoded_value = {"t": "s", "v": sort_value}
    raw = json.dumps({"s": sort_by, "k": encoded_value, "id": record_id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token: str, sort_by: str) -> CursorPosition:
    """Decode an opaque page cursor. Rejects tampered cursors and sort mismatches."""
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        cursor_sort = raw["s"]
        kind = raw["k"]["t"]
        value = raw["k"]["v"]
        record_id = str(raw["id"])
        if kind == "dt":
            value = datetime.fromisoformat(value)
    except (ValueError, KeyError, TypeError, UnicodeError, binascii.Error) as exc:
        raise InvalidCursorError("Malformed pagination cursor") from exc
    if cursor_sort != sort_by:
        raise InvalidCursorError(f"Cursor was issued for sort_by={cursor_sort}, not {sort_by}")
    return CursorPosition(sort_by=cursor_sort, sort_value=value, record_id=record_id)


def equality_clauses(model, equality: Dict[str, Any]) -> List[Any]:
    clauses = []
    for field_name, value in equality.items():
        column = getattr(model, field_name)
        if isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(column.in_(list(value)))
        else:
            clauses.append(column == value)
    return clauses


def _keyset_clause(model, sort_by: str, descending: bool, after: CursorPosition):
    sort_column = getattr(model, sort_by)
    id_column = model.id
    if descending:
        return or_(
            sort_column < after.sort_value,
            and_(sort_column == after.sort_value, id_column < after.record_id),
        )
    return or_(
        sort_column > after.sort_value,
        and_(sort_column == after.sort_value, id_column > after.record_id),
    )


async def fetch_ordered(
    db: AsyncSession,
    model,
    *,
    collection: str,
    indexes: IndexRegistry,
    partition: Sequence[Any] = (),
    equality: Optional[Dict[str, Any]] = None,
    sort_by: str = "created_at",
    descending: bool = True,
    after: Optional[CursorPosition] = None,
    limit: int = 20,
) -> List[Any]:
    """Fetch one ordered batch. Raises ``MissingIndexError`` for undeclared combinations."""
    equality = equality or {}
    for field_name, value in equality.items():
        if isinstance(value, (list, tuple, set, frozenset)) and len(value) > IN_FILTER_MAX_VALUES:
            raise ValueError(f"IN filter on {field_name} exceeds {IN_FILTER_MAX_VALUES} values")
    indexes.require(collection, equality.keys(), sort_by)

    sort_column = getattr(model, sort_by)
    stmt = select(model).where(*partition, *equality_clauses(model, equality))
    if after is not None:
        stmt = stmt.where(_keyset_clause(model, sort_by, descending, after))
    if descending:
        stmt = stmt.order_by(sort_column.desc(), model.id.desc())
    else:
        stmt = stmt.order_by(sort_column.asc(), model.id.asc())
    result = await db.execute(stmt.limit(max(int(limit), 1)))
    return list(result.scalars().all())
