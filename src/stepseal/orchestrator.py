"""
Verification Orchestrator - end-to-end decision over a signed policy

This module implements the "candidate workers + deterministic reducer" pattern:

1. Policy: verify the policy envelope against pinned trust, check expiry
2. Candidates: decode envelopes, group collections by step name
3. Workers: each (step, candidate) pair is verified independently
4. Reducer: fold candidate results into a step-indexed table (OR per step)
5. Link: connect accepted steps by digest; bind the artifact

The key invariant: same inputs → identical verdict, regardless of worker
completion order or timing. A cancelled or timed-out run is REJECTED with
Incomplete, never a partial accept.

```
policy → candidate(build, c1) →
         candidate(build, c2) → reduce → link → verdict
         candidate(test,  c1) →
```

Per step:

    PENDING → MATCHING → TRUST_CHECKED → TYPES_CHECKED → LINKED → ACCEPTED
                 └──────────────┴─────────────┴───────────┴──→ REJECTED
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from stepseal.attestation import Collection, collection_from_envelope
from stepseal.config import EngineSettings
from stepseal.digests import digests_match, hash_bytes
from stepseal.envelope import Envelope, decode_envelope
from stepseal.errors import (
    ArtifactNotAttested,
    BrokenChain,
    FATAL_CODES,
    Incomplete,
    MalformedEnvelope,
    MissingStep,
    PolicyExpired,
    Reason,
    ReasonCode,
    UntrustedPolicy,
    VerificationError,
)
from stepseal.linker import ProvenanceGraph, link
from stepseal.policy import CertConstraints, Policy, StepRule, evaluate_step, verify_policy
from stepseal.signature import SignatureVerifier, VerifiedIdentity, establish_identity
from stepseal.timestamp import TimestampVerifier
from stepseal.trust import TrustStore

logger = logging.getLogger(__name__)

EnvelopeInput = Union[Envelope, bytes, str, tuple[str, Union[Envelope, bytes, str]]]


class StepState(str, Enum):
    PENDING = "PENDING"
    MATCHING = "MATCHING"
    TRUST_CHECKED = "TRUST_CHECKED"
    TYPES_CHECKED = "TYPES_CHECKED"
    LINKED = "LINKED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class VerdictStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


# ─────────────────────────────────────────────────────────────────
# Result Types
# ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Candidate:
    """A decoded collection envelope claiming a step."""
    name: str
    envelope: Envelope
    collection: Collection


@dataclass(frozen=True)
class CandidateResult:
    step: str
    candidate: str
    accepted: bool
    reached: StepState
    reasons: tuple[Reason, ...] = ()
    identity: Optional[VerifiedIdentity] = None

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "accepted": self.accepted,
            "reached": self.reached.value,
            "reasons": [r.to_dict() for r in self.reasons],
            "identity": self.identity.to_dict() if self.identity else None,
        }


@dataclass(frozen=True)
class StepResult:
    name: str
    state: StepState
    reasons: tuple[Reason, ...] = ()
    candidates: tuple[CandidateResult, ...] = ()

    @property
    def accepted_candidates(self) -> tuple[str, ...]:
        return tuple(c.candidate for c in self.candidates if c.accepted)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "reasons": [r.to_dict() for r in self.reasons],
            "candidates": [c.to_dict() for c in self.candidates],
        }


@dataclass(frozen=True)
class SkippedEnvelope:
    """An input that could not be attributed to any step."""
    name: str
    detail: str

    def to_dict(self) -> dict:
        return {"name": self.name, "detail": self.detail}


@dataclass(frozen=True)
class Verdict:
    status: VerdictStatus
    reasons: tuple[Reason, ...]
    steps: tuple[StepResult, ...] = ()
    graph: Optional[ProvenanceGraph] = None
    skipped: tuple[SkippedEnvelope, ...] = ()
    policy_signer: Optional[VerifiedIdentity] = None

    @property
    def accepted(self) -> bool:
        return self.status is VerdictStatus.ACCEPTED

    @property
    def codes(self) -> tuple[ReasonCode, ...]:
        return tuple(r.code for r in self.reasons)

    @property
    def aborted(self) -> bool:
        """The run stopped before every step could be judged."""
        return any(code in FATAL_CODES for code in self.codes)

    def step(self, name: str) -> StepResult:
        for result in self.steps:
            if result.name == name:
                return result
        raise KeyError(name)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reasons": [r.to_dict() for r in self.reasons],
            "steps": [s.to_dict() for s in self.steps],
            "graph": self.graph.to_dict() if self.graph else None,
            "skipped": [s.to_dict() for s in self.skipped],
            "policy_signer": self.policy_signer.to_dict() if self.policy_signer else None,
        }


def _rejected(reasons: Iterable[Reason], **kwargs: Any) -> Verdict:
    return Verdict(status=VerdictStatus.REJECTED, reasons=tuple(reasons), **kwargs)


# ─────────────────────────────────────────────────────────────────
# Candidate Worker
# ─────────────────────────────────────────────────────────────────

@dataclass
class CandidateWorker:
    """Verifies one candidate collection against one step rule. Pure."""
    rule: StepRule
    candidate: Candidate
    trust_store: TrustStore
    signature_verifier: SignatureVerifier
    timestamp_verifier: TimestampVerifier
    require_timestamp: bool
    now: datetime
    cancel_events: tuple[threading.Event, ...] = ()

    def run(self) -> CandidateResult:
        step, name = self.rule.name, self.candidate.name
        if any(event.is_set() for event in self.cancel_events):
            return CandidateResult(step, name, False, StepState.PENDING, (Incomplete("cancelled").reason(step, name),))

        # MATCHING → TRUST_CHECKED: any signature that establishes an identity
        envelope = self.candidate.envelope
        identities: list[VerifiedIdentity] = []
        trust_errors: list[Reason] = []
        for signature in envelope.signatures:
            try:
                identities.append(establish_identity(
                    envelope.pae(),
                    signature,
                    self.trust_store,
                    signature_verifier=self.signature_verifier,
                    timestamp_verifier=self.timestamp_verifier,
                    require_timestamp=self.require_timestamp,
                    now=self.now,
                ))
            except VerificationError as e:
                trust_errors.append(e.reason(step, name))
        if not identities:
            return CandidateResult(step, name, False, StepState.MATCHING, tuple(trust_errors))

        # TRUST_CHECKED → TYPES_CHECKED: types and functionary per identity
        first_problems: Optional[list[Reason]] = None
        for identity in identities:
            problems = evaluate_step(self.rule, self.candidate.collection, identity)
            if not problems:
                return CandidateResult(step, name, True, StepState.TYPES_CHECKED, identity=identity)
            if first_problems is None:
                first_problems = [p.reason(step, name) for p in problems]
        return CandidateResult(step, name, False, StepState.TRUST_CHECKED, tuple(first_problems or ()), identities[0])


def reduce_step(rule: StepRule, results: Sequence[CandidateResult]) -> StepResult:
    """Fold candidate results into one step result (OR across candidates)."""
    ordered = tuple(sorted(results, key=lambda r: r.candidate))
    if any(r.accepted for r in ordered):
        return StepResult(rule.name, StepState.TYPES_CHECKED, (), ordered)
    reasons = tuple(reason for r in ordered for reason in r.reasons)
    return StepResult(rule.name, StepState.REJECTED, reasons, ordered)


# ─────────────────────────────────────────────────────────────────
# Orchestrator
# ─────────────────────────────────────────────────────────────────

ProgressCallback = Callable[[StepResult], None]


class VerificationOrchestrator:
    """
    Runs one verification: policy first, then candidates in parallel, then
    the deterministic reduce and link.

    Args:
        settings: Worker count, timeout and timestamp behaviour.
        now: Reference time for expiry and chain validity (default: now).
        cancel_event: Setting it aborts the current and every later run with
            Incomplete. A timeout only ends its own run.
        on_progress: Called in the collecting thread each time a step has
            all its candidates verified.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.settings = settings or EngineSettings()
        self.now = now
        self.cancel_event = cancel_event or threading.Event()
        self.on_progress = on_progress

    def cancel(self) -> None:
        self.cancel_event.set()

    def verify(
        self,
        policy_envelope: Union[Envelope, bytes, str],
        policy_trust: TrustStore,
        envelopes: Iterable[EnvelopeInput],
        *,
        artifact_digest: Optional[Mapping[str, str]] = None,
        policy_constraints: Optional[CertConstraints] = None,
    ) -> Verdict:
        now = self.now or datetime.now(timezone.utc)
        timestamp_verifier = TimestampVerifier(require_all=self.settings.require_all_timestamps)

        # 1. Policy
        try:
            if not isinstance(policy_envelope, Envelope):
                policy_envelope = decode_envelope(policy_envelope)
            policy, signer = verify_policy(
                policy_envelope,
                policy_trust,
                constraints=policy_constraints,
                timestamp_verifier=timestamp_verifier,
                require_timestamp=self.settings.require_timestamp_for_keyless,
                now=now,
            )
        except MalformedEnvelope as e:
            logger.error("policy envelope unreadable: %s", e.detail)
            return _rejected([UntrustedPolicy(f"policy envelope: {e.detail}").reason()])
        except UntrustedPolicy as e:
            logger.error("policy not trusted: %s", e.detail)
            return _rejected([e.reason()])
        logger.info("policy verified (signer %s, %d steps)", signer.describe(), len(policy.steps))

        # 2. Expiry, once for the run
        try:
            policy.check_expiry(now)
        except PolicyExpired as e:
            logger.warning("policy expired at %s", policy.expires.isoformat())
            steps = tuple(StepResult(r.name, StepState.REJECTED, (e.reason(r.name),)) for r in policy.steps)
            return _rejected([e.reason(r.name) for r in policy.steps], steps=steps, policy_signer=signer)

        # 3. Candidates
        candidates, skipped = self._decode_candidates(envelopes)
        by_step: dict[str, list[Candidate]] = {r.name: [] for r in policy.steps}
        for candidate in candidates:
            if candidate.collection.step_name in by_step:
                by_step[candidate.collection.step_name].append(candidate)
            else:
                logger.debug("candidate %s names unknown step %r", candidate.name, candidate.collection.step_name)

        step_results: dict[str, StepResult] = {}
        for rule in policy.steps:
            if not by_step[rule.name]:
                step_results[rule.name] = StepResult(
                    rule.name, StepState.REJECTED, (MissingStep(f"no collection for step {rule.name}").reason(rule.name),)
                )

        # 4. Workers + reduce
        incomplete = self._run_workers(policy, by_step, step_results, now, timestamp_verifier)
        if incomplete is not None:
            return self._incomplete(policy, step_results, incomplete, skipped, signer)

        ordered = tuple(step_results[r.name] for r in policy.steps)
        reasons = [reason for s in ordered for reason in s.reasons]
        if reasons:
            return _rejected(reasons, steps=ordered, skipped=skipped, policy_signer=signer)

        # 5. Link and bind artifact
        accepted = {
            r.name: [c.collection for c in by_step[r.name] if c.name in step_results[r.name].accepted_candidates]
            for r in policy.steps
        }
        graph: Optional[ProvenanceGraph] = None
        run_reasons: list[Reason] = []
        broken_steps: set[str] = set()
        try:
            graph = link(policy, accepted)
        except BrokenChain as e:
            run_reasons.extend(e.breaks)
            broken_steps = {b.step for b in e.breaks if b.step}

        if artifact_digest is not None:
            try:
                _check_artifact(artifact_digest, accepted)
            except ArtifactNotAttested as e:
                run_reasons.append(e.reason())

        if self.cancel_event.is_set():
            return self._incomplete(policy, step_results, "cancelled", skipped, signer)

        if run_reasons:
            steps = tuple(
                StepResult(s.name, StepState.REJECTED, tuple(r for r in run_reasons if r.step == s.name), s.candidates)
                if s.name in broken_steps else StepResult(s.name, StepState.LINKED, (), s.candidates)
                for s in ordered
            )
            return _rejected(run_reasons, steps=steps, graph=graph, skipped=skipped, policy_signer=signer)

        steps = tuple(StepResult(s.name, StepState.ACCEPTED, (), s.candidates) for s in ordered)
        logger.info("verification accepted (%d steps)", len(steps))
        return Verdict(
            status=VerdictStatus.ACCEPTED,
            reasons=(),
            steps=steps,
            graph=graph,
            skipped=skipped,
            policy_signer=signer,
        )

    # ── internals ────────────────────────────────────────────────────

    def _decode_candidates(
        self, envelopes: Iterable[EnvelopeInput]
    ) -> tuple[list[Candidate], tuple[SkippedEnvelope, ...]]:
        candidates: list[Candidate] = []
        skipped: list[SkippedEnvelope] = []
        seen: set[str] = set()
        for item in envelopes:
            name, blob = item if isinstance(item, tuple) else (None, item)
            try:
                envelope = blob if isinstance(blob, Envelope) else decode_envelope(blob)
                wire = envelope.raw if envelope.raw is not None else envelope.encode()
                name = name or f"sha256:{hash_bytes(wire)[:12]}"
                collection = collection_from_envelope(envelope)
            except MalformedEnvelope as e:
                label = name or f"sha256:{hash_bytes(_as_bytes(blob))[:12]}"
                logger.warning("skipping envelope %s: %s", label, e.detail)
                skipped.append(SkippedEnvelope(label, e.detail))
                continue
            if name in seen:
                logger.debug("duplicate envelope %s ignored", name)
                continue
            seen.add(name)
            candidates.append(Candidate(name=name, envelope=envelope, collection=collection))
        return candidates, tuple(sorted(skipped, key=lambda s: s.name))

    def _run_workers(
        self,
        policy: Policy,
        by_step: Mapping[str, list[Candidate]],
        step_results: dict[str, StepResult],
        now: datetime,
        timestamp_verifier: TimestampVerifier,
    ) -> Optional[str]:
        """Fill `step_results`; returns why the run was cut short, or None."""
        trust_store = policy.trust_store()
        signature_verifier = SignatureVerifier(now)
        rules = {r.name: r for r in policy.steps}
        pending = {name: len(c) for name, c in by_step.items() if c}
        collected: dict[str, list[CandidateResult]] = {name: [] for name in pending}
        if not pending:
            return None

        deadline = time.monotonic() + self.settings.timeout_seconds if self.settings.timeout_seconds else None
        run_cancel = threading.Event()
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            futures: dict[Future, tuple[str, str]] = {}
            for rule in policy.steps:
                for candidate in by_step[rule.name]:
                    worker = CandidateWorker(
                        rule=rule,
                        candidate=candidate,
                        trust_store=trust_store,
                        signature_verifier=signature_verifier,
                        timestamp_verifier=timestamp_verifier,
                        require_timestamp=self.settings.require_timestamp_for_keyless,
                        now=now,
                        cancel_events=(self.cancel_event, run_cancel),
                    )
                    futures[executor.submit(worker.run)] = (rule.name, candidate.name)

            reason: Optional[str] = None
            try:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                for future in as_completed(futures, timeout=remaining):
                    if self.cancel_event.is_set():
                        reason = "cancelled"
                        break
                    step, _ = futures[future]
                    collected[step].append(future.result())
                    pending[step] -= 1
                    if pending[step] == 0:
                        step_results[step] = reduce_step(rules[step], collected[step])
                        if self.on_progress is not None:
                            self.on_progress(step_results[step])
                    if self.cancel_event.is_set():
                        reason = "cancelled"
                        break
                    if deadline is not None and time.monotonic() > deadline:
                        reason = f"timed out after {self.settings.timeout_seconds}s"
                        break
            except FuturesTimeout:
                reason = f"timed out after {self.settings.timeout_seconds}s"

            if reason is not None:
                run_cancel.set()
                for future in futures:
                    future.cancel()
                logger.warning("verification run aborted: %s", reason)
        return reason

    def _incomplete(
        self,
        policy: Policy,
        step_results: Mapping[str, StepResult],
        detail: str,
        skipped: tuple[SkippedEnvelope, ...],
        signer: VerifiedIdentity,
    ) -> Verdict:
        # Verified steps keep their result for diagnostics; nothing is accepted
        steps = tuple(step_results.get(r.name) or StepResult(r.name, StepState.PENDING) for r in policy.steps)
        return _rejected([Incomplete(detail).reason()], steps=steps, skipped=skipped, policy_signer=signer)


def _as_bytes(blob: Any) -> bytes:
    if isinstance(blob, bytes):
        return blob
    if isinstance(blob, str):
        return blob.encode("utf-8")
    return repr(blob).encode("utf-8")


def _check_artifact(artifact_digest: Mapping[str, str], accepted: Mapping[str, Sequence[Collection]]) -> None:
    for collections in accepted.values():
        for collection in collections:
            for subject in collection.statement_subjects + collection.products():
                if digests_match(subject.digests, artifact_digest):
                    return
    raise ArtifactNotAttested("no accepted collection names the artifact digest")


def verify(
    policy_envelope: Union[Envelope, bytes, str],
    policy_trust: TrustStore,
    envelopes: Iterable[EnvelopeInput],
    *,
    settings: Optional[EngineSettings] = None,
    now: Optional[datetime] = None,
    artifact_digest: Optional[Mapping[str, str]] = None,
    policy_constraints: Optional[CertConstraints] = None,
) -> Verdict:
    """Functional form of VerificationOrchestrator.verify."""
    return VerificationOrchestrator(settings, now=now).verify(
        policy_envelope,
        policy_trust,
        envelopes,
        artifact_digest=artifact_digest,
        policy_constraints=policy_constraints,
    )


__all__ = [
    "StepState",
    "VerdictStatus",
    "Candidate",
    "CandidateResult",
    "StepResult",
    "SkippedEnvelope",
    "Verdict",
    "CandidateWorker",
    "reduce_step",
    "VerificationOrchestrator",
    "verify",
]
