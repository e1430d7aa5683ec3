"""stepseal - supply-chain attestation and policy verification.

Submodules:
    envelope      - DSSE envelope codec and signing helpers
    trust         - Read-only trust store (keys, keyless roots, TSA roots)
    signature     - Signature verification for key and keyless paths
    timestamp     - RFC 3161 timestamp verification
    attestation   - Attestation collections and subject extraction
    policy        - Policy model, parsing and step matching
    linker        - Provenance graph across steps
    orchestrator  - End-to-end verification with a worker pool
    sources       - Envelope sources and the upstream crawler
    cli           - Command-line interface for verify/sign/keyid

Public API:
    from stepseal import VerificationOrchestrator, TrustStore, decode_envelope

    verdict = VerificationOrchestrator().verify(policy_bytes, pinned, envelopes)
    verdict.accepted, verdict.reasons
"""
from __future__ import annotations

__version__ = "0.1.0"

from stepseal.attestation import AttestationKind, Collection, parse_collection
from stepseal.config import EngineSettings, load_config
from stepseal.envelope import Envelope, Signature, TimestampToken, decode_envelope, sign_envelope
from stepseal.errors import Reason, ReasonCode, VerificationError
from stepseal.linker import ProvenanceGraph, link
from stepseal.orchestrator import StepState, Verdict, VerdictStatus, VerificationOrchestrator, verify
from stepseal.policy import CertConstraints, Policy, parse_policy, satisfies_step, verify_policy
from stepseal.signature import SignatureVerifier, VerifiedIdentity
from stepseal.sources import DirectorySource, MemorySource, collect_envelopes
from stepseal.timestamp import TimestampVerifier
from stepseal.trust import TrustRoot, TrustStore


__all__ = [
    "__version__",
    # Wire
    "Envelope",
    "Signature",
    "TimestampToken",
    "decode_envelope",
    "sign_envelope",
    # Trust and verification
    "TrustRoot",
    "TrustStore",
    "SignatureVerifier",
    "TimestampVerifier",
    "VerifiedIdentity",
    # Model
    "AttestationKind",
    "Collection",
    "parse_collection",
    "CertConstraints",
    "Policy",
    "parse_policy",
    "verify_policy",
    "satisfies_step",
    "ProvenanceGraph",
    "link",
    # Engine
    "EngineSettings",
    "load_config",
    "StepState",
    "Verdict",
    "VerdictStatus",
    "VerificationOrchestrator",
    "verify",
    "DirectorySource",
    "MemorySource",
    "collect_envelopes",
    # Errors
    "Reason",
    "ReasonCode",
    "VerificationError",
]
