from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple


class StyleStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


Embedding = Tuple[float, ...]


@dataclass(frozen=True)
class ProtectedStyle:
    """A registered artistic signature and its rights-holder metadata.

    Instances are immutable; registry mutations (new samples, status change)
    produce a new instance via ``with_samples`` / ``with_status``.
    """

    style_id: str
    rights_holder_contact: str
    registered_at: float
    perceptual_hashes: frozenset[str] = field(default_factory=frozenset)
    embeddings: Tuple[Embedding, ...] = ()
    classifier_ref: Optional[str] = None
    status: StyleStatus = StyleStatus.ACTIVE

    @property
    def active(self) -> bool:
        return self.status is StyleStatus.ACTIVE

    def with_samples(
        self,
        hashes: Iterable[str] = (),
        embeddings: Iterable[Iterable[float]] = (),
    ) -> "ProtectedStyle":
        new_hashes = self.perceptual_hashes | {h.strip().lower() for h in hashes if h}
        existing = set(self.embeddings)
        merged = list(self.embeddings)
        for vec in embeddings:
            t = tuple(float(x) for x in vec)
            if t and t not in existing:
                existing.add(t)
                merged.append(t)
        return replace(self, perceptual_hashes=frozenset(new_hashes), embeddings=tuple(merged))

    def with_status(self, status: StyleStatus) -> "ProtectedStyle":
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "style_id": self.style_id,
            "rights_holder_contact": self.rights_holder_contact,
            "registered_at": self.registered_at,
            "perceptual_hashes": sorted(self.perceptual_hashes),
            "embeddings": [list(v) for v in self.embeddings],
            "classifier_ref": self.classifier_ref,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtectedStyle":
        return cls(
            style_id=str(data["style_id"]),
            rights_holder_contact=str(data.get("rights_holder_contact") or ""),
            registered_at=float(data.get("registered_at") or 0.0),
            perceptual_hashes=frozenset(
                str(h).lower() for h in data.get("perceptual_hashes") or []
            ),
            embeddings=tuple(
                tuple(float(x) for x in vec) for vec in data.get("embeddings") or []
            ),
            classifier_ref=data.get("classifier_ref") or None,
            status=StyleStatus(data.get("status") or StyleStatus.ACTIVE.value),
        )
