"""
Reason codes and exceptions for the verification engine.

Every failure the engine can report has a ReasonCode. Components raise the
matching VerificationError subclass; the orchestrator catches it at the
candidate boundary and turns it into an immutable Reason that ends up in the
final verdict.

    component raises BadSignature("...")
        → orchestrator: err.reason(step="build", candidate="att-0")
        → Verdict.reasons = (Reason(BAD_SIGNATURE, step="build", ...), ...)

Only UntrustedPolicy and Incomplete abort a whole run.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ReasonCode(str, Enum):
    """Stable identifiers for every verification outcome that is not a pass."""
    MALFORMED_ENVELOPE = "MalformedEnvelope"
    UNTRUSTED_POLICY = "UntrustedPolicy"
    POLICY_EXPIRED = "PolicyExpired"
    UNKNOWN_KEY = "UnknownKey"
    BAD_SIGNATURE = "BadSignature"
    UNTRUSTED_CHAIN = "UntrustedChain"
    UNKNOWN_TSA_ROOT = "UnknownTSARoot"
    TIMESTAMP_OUTSIDE_CERT_VALIDITY = "TimestampOutsideCertValidity"
    BAD_TIMESTAMP = "BadTimestamp"
    MISSING_TIMESTAMP = "MissingTimestamp"
    MISSING_STEP = "MissingStep"
    MISSING_ATTESTATION_TYPE = "MissingAttestationType"
    FUNCTIONARY_MISMATCH = "FunctionaryMismatch"
    BROKEN_CHAIN = "BrokenChain"
    ARTIFACT_NOT_ATTESTED = "ArtifactNotAttested"
    INCOMPLETE = "Incomplete"


# Codes that end a run immediately; nothing else can be trusted after them.
FATAL_CODES = frozenset({ReasonCode.UNTRUSTED_POLICY, ReasonCode.INCOMPLETE})


@dataclass(frozen=True)
class Reason:
    """One entry of a verdict's reason list."""
    code: ReasonCode
    detail: str = ""
    step: Optional[str] = None
    candidate: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "detail": self.detail,
            "step": self.step,
            "candidate": self.candidate,
        }

    def __str__(self) -> str:
        where = f"[{self.step}] " if self.step else ""
        if self.detail:
            return f"{where}{self.code.value}({self.detail})"
        return f"{where}{self.code.value}"


class VerificationError(Exception):
    """Base class. Subclasses pin `code`."""
    code: ReasonCode = ReasonCode.MALFORMED_ENVELOPE

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code.value)
        self.detail = detail

    def reason(self, step: Optional[str] = None, candidate: Optional[str] = None) -> Reason:
        return Reason(code=self.code, detail=self.detail, step=step, candidate=candidate)


class MalformedEnvelope(VerificationError):
    code = ReasonCode.MALFORMED_ENVELOPE


class UntrustedPolicy(VerificationError):
    code = ReasonCode.UNTRUSTED_POLICY


class PolicyExpired(VerificationError):
    code = ReasonCode.POLICY_EXPIRED


class UnknownKey(VerificationError):
    code = ReasonCode.UNKNOWN_KEY


class BadSignature(VerificationError):
    code = ReasonCode.BAD_SIGNATURE


class UntrustedChain(VerificationError):
    code = ReasonCode.UNTRUSTED_CHAIN


class UnknownTSARoot(VerificationError):
    code = ReasonCode.UNKNOWN_TSA_ROOT


class TimestampOutsideCertValidity(VerificationError):
    code = ReasonCode.TIMESTAMP_OUTSIDE_CERT_VALIDITY


class BadTimestamp(VerificationError):
    code = ReasonCode.BAD_TIMESTAMP


class MissingTimestamp(VerificationError):
    code = ReasonCode.MISSING_TIMESTAMP


class MissingStep(VerificationError):
    code = ReasonCode.MISSING_STEP


class MissingAttestationType(VerificationError):
    code = ReasonCode.MISSING_ATTESTATION_TYPE


class FunctionaryMismatch(VerificationError):
    code = ReasonCode.FUNCTIONARY_MISMATCH


class BrokenChain(VerificationError):
    """Raised by the linker; carries one Reason per broken link."""
    code = ReasonCode.BROKEN_CHAIN

    def __init__(self, detail: str = "", breaks: tuple[Reason, ...] = ()):
        super().__init__(detail)
        self.breaks = breaks


class ArtifactNotAttested(VerificationError):
    code = ReasonCode.ARTIFACT_NOT_ATTESTED


class Incomplete(VerificationError):
    code = ReasonCode.INCOMPLETE


__all__ = [
    "ReasonCode",
    "FATAL_CODES",
    "Reason",
    "VerificationError",
    "MalformedEnvelope",
    "UntrustedPolicy",
    "PolicyExpired",
    "UnknownKey",
    "BadSignature",
    "UntrustedChain",
    "UnknownTSARoot",
    "TimestampOutsideCertValidity",
    "BadTimestamp",
    "MissingTimestamp",
    "MissingStep",
    "MissingAttestationType",
    "FunctionaryMismatch",
    "BrokenChain",
    "ArtifactNotAttested",
    "Incomplete",
]
