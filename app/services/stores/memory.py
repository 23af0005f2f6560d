"""In-process stores for dev/CI; same contracts as the Redis backends."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence

from app.models.audit import AuditRecord
from app.models.style import ProtectedStyle, StyleStatus
from app.services.errors import StyleNotFound
from app.services.stores.base import AuditPage, AuditQuery
from app.utils.cursor import after_cursor, decode_cursor, encode_cursor


def _selector_value(record: AuditRecord, field: str) -> Optional[str]:
    if field == "user":
        return record.user_id
    if field == "category":
        return record.category
    return record.matched_style_id


def paginate(records: Iterable[AuditRecord], q: AuditQuery) -> AuditPage:
    field, value = q.index
    cursor = decode_cursor(q.cursor) if q.cursor else None
    matching = sorted(
        (
            r
            for r in records
            if _selector_value(r, field) == value
            and q.in_range(r.ts_ms)
            and after_cursor(r.ts_ms, r.intervention_id, cursor)
        ),
        key=lambda r: (r.ts_ms, r.intervention_id),
    )
    page = matching[: q.limit]
    next_cursor = None
    if len(matching) > q.limit and page:
        last = page[-1]
        next_cursor = encode_cursor(last.ts_ms, last.intervention_id)
    return AuditPage(records=tuple(page), next_cursor=next_cursor)


class MemoryAuditStore:
    def __init__(self) -> None:
        self._records: Dict[str, AuditRecord] = {}

    async def put(self, record: AuditRecord) -> bool:
        if record.intervention_id in self._records:
            return False
        self._records[record.intervention_id] = record
        return True

    async def get(self, intervention_id: str) -> Optional[AuditRecord]:
        return self._records.get(intervention_id)

    async def query(self, q: AuditQuery) -> AuditPage:
        return paginate(list(self._records.values()), q)

    def __len__(self) -> int:
        return len(self._records)


class MemoryStyleStore:
    def __init__(self) -> None:
        self._styles: Dict[str, ProtectedStyle] = {}

    async def list_active(self) -> List[ProtectedStyle]:
        return [s for s in self._styles.values() if s.active]

    async def get(self, style_id: str) -> Optional[ProtectedStyle]:
        return self._styles.get(style_id)

    async def create(self, style: ProtectedStyle) -> bool:
        if style.style_id in self._styles:
            return False
        self._styles[style.style_id] = style
        return True

    async def put(self, style: ProtectedStyle) -> None:
        self._styles[style.style_id] = style

    async def add_samples(
        self,
        style_id: str,
        hashes: Iterable[str] = (),
        embeddings: Iterable[Sequence[float]] = (),
    ) -> ProtectedStyle:
        current = self._styles.get(style_id)
        if current is None:
            raise StyleNotFound(style_id)
        updated = current.with_samples(hashes, embeddings)
        self._styles[style_id] = updated
        return updated

    async def set_status(self, style_id: str, status: StyleStatus) -> ProtectedStyle:
        current = self._styles.get(style_id)
        if current is None:
            raise StyleNotFound(style_id)
        updated = current.with_status(status)
        self._styles[style_id] = updated
        return updated
