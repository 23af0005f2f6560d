from __future__ import annotations


class GuardrailError(Exception):
    """Base for failures raised inside the interception core."""


class OracleFailure(GuardrailError):
    """An external analysis capability timed out, was unreachable, or replied
    with something we could not parse."""

    def __init__(self, oracle: str, reason: str) -> None:
        super().__init__(f"{oracle} oracle failure: {reason}")
        self.oracle = oracle
        self.reason = reason


class DownstreamFailure(GuardrailError):
    """The generative backend failed, timed out, or returned nothing."""


class FingerprintError(GuardrailError):
    """Generated image content could not be fingerprinted."""


class StoreUnavailable(GuardrailError):
    """The durable store rejected or could not complete an operation."""


class StyleNotFound(GuardrailError, KeyError):
    pass


class InvalidTransaction(GuardrailError, ValueError):
    """Caller input is malformed; it never reaches the gates."""
