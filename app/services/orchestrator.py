"""
Dual-gate interception state machine.

    RECEIVED -> GATE1_EVAL -> FORWARDING -> GATE2_EVAL -> DELIVERED
                    |              |             |
                    +--------------+-------------+--> BLOCKED

Gate 1 (prompt) strictly precedes the single downstream call, which strictly
precedes Gate 2 (generated content). Both gates fail closed: an oracle or
fingerprinting failure is a ``service_unavailable`` block. Every terminal state
is audited exactly once before the outcome is returned, and the audit path can
never change the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable

from app.models.guardrail import (
    BLOCK_MESSAGES,
    Blocked,
    Delivered,
    DetectionMethod,
    GeneratedContent,
    Outcome,
    Transaction,
    TransactionState,
    ValidationResult,
    ViolationCategory,
)
from app.observability.metrics import (
    inc_downstream_failure,
    inc_gate_decision,
    inc_oracle_failure,
)
from app.services.audit_writer import AuditOutcome, AuditWriter
from app.services.backend_client import GenerativeBackend
from app.services.errors import DownstreamFailure, InvalidTransaction, OracleFailure
from app.services.evaluator import ViolationEvaluator
from app.services.fingerprinter import Fingerprinter
from app.services.oracles.score import ScoreOracleClient
from app.services.registry_cache import StyleRegistryCache
from app.telemetry.logging import bind

log = logging.getLogger(__name__)

# Oracle categories that carry no finer threshold key of their own.
_GENERIC_CATEGORIES = {"", "none", "jailbreak"}


class InterceptionOrchestrator:
    def __init__(
        self,
        *,
        score_oracle: ScoreOracleClient,
        backend: GenerativeBackend,
        fingerprinter: Fingerprinter,
        registry: StyleRegistryCache,
        evaluator: ViolationEvaluator,
        audit: AuditWriter,
        gate1_timeout_s: float = 2.0,
        downstream_timeout_s: float = 30.0,
        gate2_budget_s: float = 5.0,
        max_prompt_chars: int = 20000,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._oracle = score_oracle
        self._backend = backend
        self._fingerprinter = fingerprinter
        self._registry = registry
        self._evaluator = evaluator
        self._audit = audit
        self.gate1_timeout_s = float(gate1_timeout_s)
        self.downstream_timeout_s = float(downstream_timeout_s)
        self.gate2_budget_s = float(gate2_budget_s)
        self.max_prompt_chars = int(max_prompt_chars)
        self._new_id = id_factory

    # ---------------------- input validation ----------------------

    def validate(self, txn: Transaction) -> None:
        if not (txn.user_id or "").strip():
            raise InvalidTransaction("user_id is required")
        if not (txn.prompt or "").strip():
            raise InvalidTransaction("prompt must not be empty")
        if len(txn.prompt) > self.max_prompt_chars:
            raise InvalidTransaction(
                f"prompt exceeds {self.max_prompt_chars} characters"
            )
        if txn.state is not TransactionState.RECEIVED:
            raise InvalidTransaction(f"transaction already {txn.state.value}")

    # ---------------------- state machine ----------------------

    async def process(self, txn: Transaction) -> Outcome:
        self.validate(txn)
        intervention_id = self._new_id()
        tlog = bind(log, request_id=txn.request_id, intervention_id=intervention_id)

        txn.advance(TransactionState.GATE1_EVAL)
        gate1 = await self._gate1(txn, tlog)
        if gate1.violation:
            source = "oracle" if gate1.method is DetectionMethod.ORACLE_FAILURE else "policy"
            return await self._block(txn, intervention_id, 1, gate1, source)

        txn.advance(TransactionState.FORWARDING)
        try:
            txn.content = await self._forward(txn)
        except DownstreamFailure as exc:
            inc_downstream_failure()
            tlog.error("generative backend failed", extra={"error": str(exc)})
            result = self._evaluator.fail_closed(DetectionMethod.DOWNSTREAM_FAILURE, str(exc))
            return await self._block(txn, intervention_id, 2, result, "downstream")

        txn.advance(TransactionState.GATE2_EVAL)
        gate2 = await self._gate2(txn, tlog)
        if gate2.violation:
            source = "oracle" if gate2.method is DetectionMethod.ORACLE_FAILURE else "policy"
            return await self._block(txn, intervention_id, 2, gate2, source)

        txn.advance(TransactionState.DELIVERED)
        # With nothing to fingerprint, gate 1 is the evaluation that decided.
        gate, decided = (2, gate2) if txn.content.is_visual else (1, gate1)
        await self._record(AuditOutcome(intervention_id, txn, gate, decided, "allowed"))
        inc_gate_decision(gate, decided.category.value, "allowed")
        return Delivered(content=txn.content, intervention_id=intervention_id)

    # ---------------------- gates ----------------------

    async def _gate1(self, txn: Transaction, tlog: logging.LoggerAdapter) -> ValidationResult:
        try:
            assessment = await asyncio.wait_for(
                self._oracle.analyze(txn.prompt), timeout=self.gate1_timeout_s
            )
        except asyncio.TimeoutError:
            return self._oracle_failed(OracleFailure("semantic", "timeout"), tlog)
        except OracleFailure as exc:
            return self._oracle_failed(exc, tlog)
        except Exception as exc:
            tlog.exception("semantic oracle adapter raised unexpectedly")
            return self._oracle_failed(OracleFailure("semantic", type(exc).__name__), tlog)

        content_category = (
            None if assessment.category in _GENERIC_CATEGORIES else assessment.category
        )
        return self._evaluator.evaluate(
            assessment.confidence,
            ViolationCategory.JAILBREAK,
            content_category=content_category,
            rationale=assessment.rationale,
            method=DetectionMethod.SEMANTIC,
        )

    async def _forward(self, txn: Transaction) -> GeneratedContent:
        payload = dict(txn.payload)
        payload.setdefault("prompt", txn.prompt)
        try:
            content = await asyncio.wait_for(
                self._backend.generate(payload, txn.auth_context),
                timeout=self.downstream_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise DownstreamFailure("generative backend timed out") from exc
        except DownstreamFailure:
            raise
        except Exception as exc:
            raise DownstreamFailure(f"generative backend error: {type(exc).__name__}") from exc
        if content is None or not content.body:
            raise DownstreamFailure("generative backend returned empty content")
        return content

    async def _gate2(self, txn: Transaction, tlog: logging.LoggerAdapter) -> ValidationResult:
        content = txn.content
        if content is None or not content.is_visual:
            return self._evaluator.no_visual_content()

        styles = self._registry.active_styles()
        try:
            fp = await asyncio.wait_for(
                self._fingerprinter.match(content.body, styles),
                timeout=self.gate2_budget_s,
            )
        except asyncio.TimeoutError:
            return self._oracle_failed(OracleFailure("vision", "timeout"), tlog)
        except OracleFailure as exc:
            return self._oracle_failed(exc, tlog)
        except Exception as exc:
            tlog.warning("fingerprinting failed", extra={"error": type(exc).__name__})
            return self._oracle_failed(OracleFailure("fingerprint", str(exc) or type(exc).__name__), tlog)
        return self._evaluator.evaluate_fingerprint(fp)

    def _oracle_failed(self, exc: OracleFailure, tlog: logging.LoggerAdapter) -> ValidationResult:
        inc_oracle_failure(exc.oracle, exc.reason)
        tlog.warning(
            "oracle failure; failing closed",
            extra={"oracle": exc.oracle, "reason": exc.reason},
        )
        return self._evaluator.fail_closed(DetectionMethod.ORACLE_FAILURE, str(exc))

    # ---------------------- terminal states ----------------------

    async def _block(
        self,
        txn: Transaction,
        intervention_id: str,
        gate: int,
        result: ValidationResult,
        source: str,
    ) -> Blocked:
        txn.advance(TransactionState.BLOCKED)
        await self._record(AuditOutcome(intervention_id, txn, gate, result, "blocked"))
        inc_gate_decision(gate, result.category.value, "blocked")
        category = result.category
        return Blocked(
            category=category,
            message=BLOCK_MESSAGES.get(category, BLOCK_MESSAGES[ViolationCategory.JAILBREAK]),
            intervention_id=intervention_id,
            score=result.score,
            threshold=result.threshold,
            source=source,
        )

    async def _record(self, outcome: AuditOutcome) -> None:
        # The terminal state is committed; a caller cancelling now must not
        # abort the audit write, so it runs as its own shielded task.
        task = asyncio.ensure_future(self._audit.record(outcome))
        await asyncio.shield(task)
