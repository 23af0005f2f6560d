from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

_log = logging.getLogger(__name__)

C = TypeVar("C", Counter, Gauge)


# -----------------------------------------------------------------------------
# Metrics must never break a request path; failures are logged at DEBUG.
# -----------------------------------------------------------------------------
def _best_effort(msg: str, fn: Callable[[], Any]) -> None:
    try:
        fn()
    except Exception as e:  # pragma: no cover
        # nosec B110 - metrics should never crash request paths; debug for ops.
        _log.debug("%s: %s", msg, e)


def _get_or_create(
    kind: Type[C],
    name: str,
    doc: str,
    labelnames: Tuple[str, ...] = (),
    registry: Optional[CollectorRegistry] = None,
) -> C:
    reg = registry or REGISTRY
    # Module reloads in tests must reuse the collector already registered.
    names_map = getattr(reg, "_names_to_collectors", None)
    if isinstance(names_map, dict):
        existing = names_map.get(name)
        if isinstance(existing, kind):
            return existing
    try:
        return kind(name, doc, labelnames=labelnames, registry=reg)
    except ValueError:
        if isinstance(names_map, dict):
            found = names_map.get(name) or names_map.get(f"{name}_total")
            if isinstance(found, kind):
                return found
        # Final fallback: unregistered collector (won't be exposed).
        return kind(name, doc, labelnames=labelnames)


# --- Gate decisions -------------------------------------------------------------

gate_decisions_total = _get_or_create(
    Counter,
    "guardrail_gate_decisions_total",
    "Terminal decisions by gate, category and action",
    ("gate", "category", "action"),
)
oracle_failures_total = _get_or_create(
    Counter,
    "guardrail_oracle_failures_total",
    "Oracle calls that failed or timed out (fail-closed blocks)",
    ("oracle", "reason"),
)
downstream_failures_total = _get_or_create(
    Counter,
    "guardrail_downstream_failures_total",
    "Generative backend calls that failed, timed out or returned nothing",
)

# --- Audit path ---------------------------------------------------------------

audit_writes_total = _get_or_create(
    Counter,
    "guardrail_audit_writes_total",
    "Audit record writes by outcome (direct, buffered, flushed)",
    ("outcome",),
)
audit_evictions_total = _get_or_create(
    Counter,
    "guardrail_audit_evictions_total",
    "Audit records evicted from a full retry buffer (data-loss alert)",
)
audit_dead_letters_total = _get_or_create(
    Counter,
    "guardrail_audit_dead_letters_total",
    "Audit records that exhausted retries or were evicted",
    ("reason",),
)
audit_buffer_depth = _get_or_create(
    Gauge,
    "guardrail_audit_buffer_depth",
    "Audit records awaiting a retried write",
)

# --- Style registry -----------------------------------------------------------

registry_refresh_total = _get_or_create(
    Counter,
    "guardrail_registry_refresh_total",
    "Style registry refresh attempts by result",
    ("result",),
)
registry_snapshot_styles = _get_or_create(
    Gauge,
    "guardrail_registry_snapshot_styles",
    "Active styles in the current registry snapshot",
)
registry_snapshot_age_seconds = _get_or_create(
    Gauge,
    "guardrail_registry_snapshot_age_seconds",
    "Age of the registry snapshot at the last refresh attempt",
)


def inc_gate_decision(gate: int, category: str, action: str) -> None:
    _best_effort(
        "inc gate decision",
        lambda: gate_decisions_total.labels(str(gate), category, action).inc(),
    )


def inc_oracle_failure(oracle: str, reason: str) -> None:
    # Keep the reason label bounded: "http 503" -> "http".
    bucket = (reason or "unknown").split(":", 1)[0].split(" ", 1)[0]
    _best_effort(
        "inc oracle failure",
        lambda: oracle_failures_total.labels(oracle, bucket).inc(),
    )


def inc_downstream_failure() -> None:
    _best_effort("inc downstream failure", downstream_failures_total.inc)


def inc_audit_write(outcome: str) -> None:
    _best_effort("inc audit write", lambda: audit_writes_total.labels(outcome).inc())


def inc_audit_eviction() -> None:
    _best_effort("inc audit eviction", audit_evictions_total.inc)


def inc_audit_dead_letter(reason: str) -> None:
    _best_effort(
        "inc audit dead letter", lambda: audit_dead_letters_total.labels(reason).inc()
    )


def set_audit_buffer_depth(n: int) -> None:
    _best_effort("set audit buffer depth", lambda: audit_buffer_depth.set(max(0, int(n))))


def inc_registry_refresh(result: str) -> None:
    _best_effort(
        "inc registry refresh", lambda: registry_refresh_total.labels(result).inc()
    )


def set_registry_styles(n: int) -> None:
    _best_effort("set registry styles", lambda: registry_snapshot_styles.set(max(0, int(n))))


def set_registry_age(seconds: float) -> None:
    _best_effort("set registry age", lambda: registry_snapshot_age_seconds.set(max(0.0, float(seconds))))
