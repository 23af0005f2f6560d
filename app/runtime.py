from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.config import Settings, get_settings
from app.models.guardrail import ViolationCategory
from app.services.audit_writer import AuditWriter
from app.services.backend_client import GenerativeBackend, get_backend
from app.services.evaluator import ViolationEvaluator
from app.services.fingerprinter import Fingerprinter
from app.services.oracles import (
    ScoreOracleClient,
    VisionOracleClient,
    build_score_oracle,
    build_vision_oracle,
)
from app.services.orchestrator import InterceptionOrchestrator
from app.services.registry_cache import StyleRegistryCache
from app.services.stores import AuditStore, StyleStore, build_stores
from app.services.thresholds import ThresholdStore


@dataclass
class Runtime:
    """Process-lifetime components, built once per app and kept on ``app.state``."""

    settings: Settings
    audit_store: AuditStore
    style_store: StyleStore
    thresholds: ThresholdStore
    evaluator: ViolationEvaluator
    registry: StyleRegistryCache
    fingerprinter: Fingerprinter
    audit: AuditWriter
    backend: GenerativeBackend
    orchestrator: InterceptionOrchestrator

    async def start(self) -> None:
        await self.registry.start()
        self.audit.start()

    async def stop(self) -> None:
        await self.registry.stop()
        await self.audit.stop(final_flush=True)


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    audit_store: Optional[AuditStore] = None,
    style_store: Optional[StyleStore] = None,
    score_oracle: Optional[ScoreOracleClient] = None,
    vision_oracle: Optional[VisionOracleClient] = None,
    backend: Optional[GenerativeBackend] = None,
) -> Runtime:
    """Wire the components from settings; explicit arguments replace the defaults."""
    s = settings or get_settings()
    if audit_store is None or style_store is None:
        default_audit, default_styles = build_stores(s)
        audit_store = audit_store or default_audit
        style_store = style_store or default_styles

    thresholds = ThresholdStore(
        {
            ViolationCategory.JAILBREAK: s.THRESHOLD_JAILBREAK,
            ViolationCategory.IP_MIMICRY: s.THRESHOLD_IP_MIMICRY,
        }
    )
    evaluator = ViolationEvaluator(thresholds)
    registry = StyleRegistryCache(
        style_store,
        interval_s=s.REGISTRY_REFRESH_INTERVAL_S,
        read_timeout_s=s.REGISTRY_READ_TIMEOUT_S,
    )
    fingerprinter = Fingerprinter(
        vision_oracle or build_vision_oracle(s),
        thresholds,
        max_image_pixels=s.MAX_IMAGE_PIXELS,
    )
    audit = AuditWriter(
        audit_store,
        capacity=s.AUDIT_BUFFER_CAPACITY,
        dead_letter_capacity=s.AUDIT_DEAD_LETTER_CAPACITY,
        write_timeout_s=s.AUDIT_WRITE_TIMEOUT_S,
        backoff_base_s=s.AUDIT_BACKOFF_BASE_S,
        backoff_cap_s=s.AUDIT_BACKOFF_CAP_S,
        max_attempts=s.AUDIT_MAX_ATTEMPTS,
        retention_days=s.AUDIT_RETENTION_DAYS,
    )
    backend = backend or get_backend(s)
    orchestrator = InterceptionOrchestrator(
        score_oracle=score_oracle or build_score_oracle(s),
        backend=backend,
        fingerprinter=fingerprinter,
        registry=registry,
        evaluator=evaluator,
        audit=audit,
        gate1_timeout_s=s.GATE1_TIMEOUT_S,
        downstream_timeout_s=s.DOWNSTREAM_TIMEOUT_S,
        gate2_budget_s=s.GATE2_BUDGET_S,
        max_prompt_chars=s.MAX_PROMPT_CHARS,
    )
    return Runtime(
        settings=s,
        audit_store=audit_store,
        style_store=style_store,
        thresholds=thresholds,
        evaluator=evaluator,
        registry=registry,
        fingerprinter=fingerprinter,
        audit=audit,
        backend=backend,
        orchestrator=orchestrator,
    )
