from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol, Sequence

from app.models.audit import AuditRecord
from app.models.style import ProtectedStyle, StyleStatus

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000


@dataclass(frozen=True)
class AuditQuery:
    """Exactly one selector (user, category or style) plus a time range."""

    user_id: Optional[str] = None
    category: Optional[str] = None
    matched_style_id: Optional[str] = None
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    limit: int = DEFAULT_PAGE_LIMIT
    cursor: Optional[str] = None

    def __post_init__(self) -> None:
        selectors = [s for s in (self.user_id, self.category, self.matched_style_id) if s]
        if len(selectors) != 1:
            raise ValueError("exactly one of user_id, category, matched_style_id is required")
        if not 1 <= int(self.limit) <= MAX_PAGE_LIMIT:
            raise ValueError(f"limit must be within 1..{MAX_PAGE_LIMIT}")

    @property
    def index(self) -> tuple[str, str]:
        if self.user_id:
            return "user", self.user_id
        if self.category:
            return "category", self.category
        return "style", str(self.matched_style_id)

    def in_range(self, ts_ms: int) -> bool:
        if self.start_ms is not None and ts_ms < self.start_ms:
            return False
        if self.end_ms is not None and ts_ms > self.end_ms:
            return False
        return True


@dataclass(frozen=True)
class AuditPage:
    records: Sequence[AuditRecord] = field(default_factory=tuple)
    next_cursor: Optional[str] = None


class AuditStore(Protocol):
    async def put(self, record: AuditRecord) -> bool:
        """Persist ``record``; idempotent on intervention id.

        Returns True if this call created the record, False if it already
        existed (the stored copy is left untouched).
        """
        ...

    async def get(self, intervention_id: str) -> Optional[AuditRecord]: ...

    async def query(self, q: AuditQuery) -> AuditPage: ...


class StyleStore(Protocol):
    async def list_active(self) -> List[ProtectedStyle]: ...

    async def get(self, style_id: str) -> Optional[ProtectedStyle]: ...

    async def create(self, style: ProtectedStyle) -> bool:
        """Store a new style; False (and no write) if the id already exists."""
        ...

    async def put(self, style: ProtectedStyle) -> None: ...

    async def add_samples(
        self,
        style_id: str,
        hashes: Iterable[str] = (),
        embeddings: Iterable[Sequence[float]] = (),
    ) -> ProtectedStyle: ...

    async def set_status(self, style_id: str, status: StyleStatus) -> ProtectedStyle: ...
