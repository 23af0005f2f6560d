from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from app.models.guardrail import ViolationCategory

ThresholdKey = Tuple[str, Optional[str]]


def _check(value: float) -> float:
    v = float(value)
    if not 0.0 <= v <= 1.0:
        raise ValueError(f"threshold must be within [0, 1], got {value!r}")
    return v


@dataclass(frozen=True)
class ThresholdConfig:
    """Immutable, versioned threshold snapshot.

    Keys are ``(category, content_category)``; ``content_category=None`` is the
    category default.
    """

    version: int
    values: Mapping[ThresholdKey, float]
    updated_at: float = field(default_factory=time.time)

    def resolve(
        self, category: ViolationCategory | str, content_category: Optional[str] = None
    ) -> float:
        cat = ViolationCategory(category).value
        if content_category:
            finer = self.values.get((cat, content_category.strip().lower()))
            if finer is not None:
                return finer
        try:
            return self.values[(cat, None)]
        except KeyError:
            raise KeyError(f"no threshold configured for category {cat!r}") from None

    def as_dict(self) -> Dict[str, object]:
        defaults: Dict[str, float] = {}
        overrides: Dict[str, Dict[str, float]] = {}
        for (cat, sub), val in sorted(self.values.items(), key=lambda kv: (kv[0][0], kv[0][1] or "")):
            if sub is None:
                defaults[cat] = val
            else:
                overrides.setdefault(cat, {})[sub] = val
        return {
            "version": self.version,
            "updated_at": self.updated_at,
            "defaults": defaults,
            "overrides": overrides,
        }


class ThresholdStore:
    """Holds the current ThresholdConfig; updates are atomic reference swaps."""

    def __init__(self, defaults: Mapping[ViolationCategory | str, float]) -> None:
        values = {(ViolationCategory(k).value, None): _check(v) for k, v in defaults.items()}
        self._lock = threading.Lock()
        self._current = ThresholdConfig(version=1, values=MappingProxyType(values))

    def snapshot(self) -> ThresholdConfig:
        # Reference read; the snapshot itself is immutable.
        return self._current

    def update(
        self,
        defaults: Optional[Mapping[ViolationCategory | str, float]] = None,
        overrides: Optional[Mapping[ViolationCategory | str, Mapping[str, float]]] = None,
        remove: Iterable[Tuple[ViolationCategory | str, str]] = (),
    ) -> ThresholdConfig:
        """Merge new values into a fresh snapshot and install it.

        ``remove`` drops finer overrides in the same swap; category defaults
        cannot be removed.
        """
        with self._lock:
            merged: Dict[ThresholdKey, float] = dict(self._current.values)
            for cat, sub in remove:
                merged.pop((ViolationCategory(cat).value, sub.strip().lower()), None)
            for cat, val in (defaults or {}).items():
                merged[(ViolationCategory(cat).value, None)] = _check(val)
            for cat, subs in (overrides or {}).items():
                c = ViolationCategory(cat).value
                for sub, val in subs.items():
                    merged[(c, sub.strip().lower())] = _check(val)
            nxt = ThresholdConfig(
                version=self._current.version + 1,
                values=MappingProxyType(merged),
            )
            self._current = nxt
            return nxt

    def remove_override(self, category: ViolationCategory | str, content_category: str) -> ThresholdConfig:
        return self.update(remove=[(category, content_category)])
