"""
Policy model and matcher.

A policy names the steps of a supply chain, what each step must attest, who
may sign for it, and where its materials must come from:

    {"expires": "2030-01-01T00:00:00Z",
     "steps": {"build": {"name": "build",
                         "attestations": [{"type": "material"}, {"type": "product"}],
                         "functionaries": [{"type": "publickey", "publickeyid": "K1"}],
                         "artifactsFrom": []}},
     "publickeys": {"K1": {"keyid": "K1", "key": "<base64 PEM>"}},
     "roots": {"fulcio": {"certificate": "<base64 PEM>", "intermediates": []}},
     "timestampauthorities": {"tsa": {"certificate": "<base64 PEM>"}}}

The policy travels inside a signed envelope. verify_policy checks that
envelope against separately pinned trust before any of its contents are used.

Matching rules:
    required types   every listed type present; extra types are fine
    functionaries    at least one matches the verified identity
    keyless match    every non-empty constraint glob-matches the leaf;
                     an empty constraint set matches any identity under
                     the root (logged as a warning when the policy loads)
    expiry           checked once per run
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

from stepseal.attestation import Collection, resolve_type
from stepseal.cryptoutil import CertIdentity, PublicKey, ensure_utc, load_public_key
from stepseal.envelope import POLICY_PAYLOAD_TYPE, Envelope
from stepseal.errors import (
    FunctionaryMismatch,
    MissingAttestationType,
    PolicyExpired,
    UntrustedPolicy,
    VerificationError,
)
from stepseal.signature import IdentityKind, SignatureVerifier, VerifiedIdentity, establish_identity
from stepseal.timestamp import TimestampVerifier
from stepseal.trust import TrustRoot, TrustStore

logger = logging.getLogger(__name__)


class FunctionaryKind(str, Enum):
    PUBLIC_KEY = "publickey"
    KEYLESS = "keyless"


_FUNCTIONARY_TYPES = {
    "publickey": FunctionaryKind.PUBLIC_KEY,
    "key": FunctionaryKind.PUBLIC_KEY,
    "root": FunctionaryKind.KEYLESS,
    "keyless": FunctionaryKind.KEYLESS,
}

# Field names below are matched case-insensitively
_CONSTRAINT_SPELLINGS = frozenset({"certconstraints", "certconstraint"})
_KEYLESS_FIELDS = _CONSTRAINT_SPELLINGS | {"type"}
_CONSTRAINT_FIELDS = frozenset({"commonname", "dnsnames", "emails", "organizations", "uris", "roots"})


# ─────────────────────────────────────────────────────────────────
# Functionaries
# ─────────────────────────────────────────────────────────────────

def _glob_any(patterns: Iterable[str], value: str) -> bool:
    return any(fnmatchcase(value, p) for p in patterns)


def _all_values_allowed(patterns: tuple[str, ...], values: tuple[str, ...]) -> bool:
    # Every value the certificate carries must be allowed, and it must carry one
    return bool(values) and all(_glob_any(patterns, v) for v in values)


@dataclass(frozen=True)
class CertConstraints:
    common_name: str = ""
    dns_names: tuple[str, ...] = ()
    emails: tuple[str, ...] = ()
    organizations: tuple[str, ...] = ()
    uris: tuple[str, ...] = ()
    roots: tuple[str, ...] = ()

    @property
    def is_unconstrained(self) -> bool:
        return not (self.common_name or self.dns_names or self.emails or self.organizations or self.uris)

    def mismatches(self, identity: CertIdentity, root_id: Optional[str]) -> list[str]:
        """Names of the constraint fields the identity fails."""
        failed = []
        if self.roots and root_id not in self.roots:
            failed.append("roots")
        if self.common_name and not fnmatchcase(identity.common_name, self.common_name):
            failed.append("commonname")
        for name, patterns, values in (
            ("dnsnames", self.dns_names, identity.dns_names),
            ("emails", self.emails, identity.emails),
            ("organizations", self.organizations, identity.organizations),
            ("uris", self.uris, identity.uris),
        ):
            if patterns and not _all_values_allowed(patterns, values):
                failed.append(name)
        return failed

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CertConstraints":
        data = {str(k).lower(): v for k, v in data.items()}
        unknown = sorted(k for k in data if k not in _CONSTRAINT_FIELDS)
        if unknown:
            raise UntrustedPolicy(f"certConstraints has unsupported fields: {', '.join(unknown)}")

        def strings(key: str) -> tuple[str, ...]:
            value = data.get(key) or []
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise UntrustedPolicy(f"certConstraints.{key} must be a list of strings")
            # A lone empty string means "no constraint"
            return tuple(v for v in value if v)

        common_name = data.get("commonname", "") or ""
        if not isinstance(common_name, str):
            raise UntrustedPolicy("certConstraints.commonname must be a string")
        return cls(
            common_name=common_name,
            dns_names=strings("dnsnames"),
            emails=strings("emails"),
            organizations=strings("organizations"),
            uris=strings("uris"),
            roots=strings("roots"),
        )

    def to_dict(self) -> dict:
        return {
            "commonname": self.common_name,
            "dnsnames": list(self.dns_names),
            "emails": list(self.emails),
            "organizations": list(self.organizations),
            "uris": list(self.uris),
            "roots": list(self.roots),
        }


@dataclass(frozen=True)
class Functionary:
    kind: FunctionaryKind
    key_id: str = ""
    constraints: CertConstraints = field(default_factory=CertConstraints)

    def matches(self, identity: VerifiedIdentity) -> bool:
        return _FUNCTIONARY_MATCHERS[self.kind](self, identity)

    def describe(self) -> str:
        if self.kind is FunctionaryKind.PUBLIC_KEY:
            return f"publickey:{self.key_id}"
        return f"keyless:{self.constraints.to_dict()}"

    def to_dict(self) -> dict:
        if self.kind is FunctionaryKind.PUBLIC_KEY:
            return {"type": "publickey", "publickeyid": self.key_id}
        return {"type": "root", "certConstraints": self.constraints.to_dict()}


def _match_public_key(functionary: Functionary, identity: VerifiedIdentity) -> bool:
    return identity.kind is IdentityKind.PUBLIC_KEY and identity.key_id == functionary.key_id


def _match_keyless(functionary: Functionary, identity: VerifiedIdentity) -> bool:
    if identity.kind is not IdentityKind.KEYLESS:
        return False
    cert_identity = identity.cert_identity
    if cert_identity is None:
        return False
    return not functionary.constraints.mismatches(cert_identity, identity.root_id)


_FUNCTIONARY_MATCHERS: dict[FunctionaryKind, Callable[[Functionary, VerifiedIdentity], bool]] = {
    FunctionaryKind.PUBLIC_KEY: _match_public_key,
    FunctionaryKind.KEYLESS: _match_keyless,
}


def _keyless_constraints(data: Mapping[str, Any], where: str) -> Mapping[str, Any]:
    """The constraint object of a keyless functionary, under either spelling."""
    unknown = sorted(str(k) for k in data if str(k).lower() not in _KEYLESS_FIELDS)
    if unknown:
        raise UntrustedPolicy(f"{where} has unknown fields: {', '.join(unknown)}")
    spellings = [k for k in data if str(k).lower() in _CONSTRAINT_SPELLINGS]
    if len(spellings) > 1:
        raise UntrustedPolicy(f"{where} sets certConstraints more than once")
    raw = data[spellings[0]] if spellings else None
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise UntrustedPolicy(f"{where}.certConstraints must be an object")
    return raw


def parse_functionary(data: Any, where: str) -> Functionary:
    if not isinstance(data, Mapping):
        raise UntrustedPolicy(f"{where} must be an object")
    kind = _FUNCTIONARY_TYPES.get(str(data.get("type", "")).lower())
    if kind is None:
        raise UntrustedPolicy(f"{where} has unknown type {data.get('type')!r}")
    if kind is FunctionaryKind.PUBLIC_KEY:
        key_id = data.get("publickeyid")
        if not isinstance(key_id, str) or not key_id:
            raise UntrustedPolicy(f"{where} needs a publickeyid")
        return Functionary(kind=kind, key_id=key_id)
    constraints = CertConstraints.from_dict(_keyless_constraints(data, where))
    if constraints.is_unconstrained:
        logger.warning(
            "%s is a keyless functionary without identity constraints; "
            "it trusts any identity issued under %s",
            where,
            ", ".join(constraints.roots) or "any configured root",
        )
    return Functionary(kind=kind, constraints=constraints)


# ─────────────────────────────────────────────────────────────────
# Steps and policy
# ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StepRule:
    name: str
    required_types: tuple[str, ...] = ()
    functionaries: tuple[Functionary, ...] = ()
    artifacts_from: tuple[str, ...] = ()

    @property
    def is_root(self) -> bool:
        """A root step has no required predecessor."""
        return not self.artifacts_from

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "attestations": [{"type": t} for t in self.required_types],
            "functionaries": [f.to_dict() for f in self.functionaries],
            "artifactsFrom": list(self.artifacts_from),
        }


@dataclass(frozen=True)
class Policy:
    expires: datetime
    steps: tuple[StepRule, ...]
    public_keys: Mapping[str, PublicKey] = field(default_factory=dict)
    keyless_roots: Mapping[str, TrustRoot] = field(default_factory=dict)
    timestamp_roots: Mapping[str, TrustRoot] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "public_keys", MappingProxyType(dict(self.public_keys)))
        object.__setattr__(self, "keyless_roots", MappingProxyType(dict(self.keyless_roots)))
        object.__setattr__(self, "timestamp_roots", MappingProxyType(dict(self.timestamp_roots)))

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self.steps)

    def step(self, name: str) -> StepRule:
        for rule in self.steps:
            if rule.name == name:
                return rule
        raise KeyError(name)

    def trust_store(self) -> TrustStore:
        return TrustStore(
            public_keys=self.public_keys,
            keyless_roots=self.keyless_roots,
            timestamp_roots=self.timestamp_roots,
        )

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(now) > self.expires

    def check_expiry(self, now: datetime) -> None:
        if self.is_expired(now):
            raise PolicyExpired(f"policy expired at {self.expires.isoformat()}")


_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_time(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp; sub-microsecond digits are dropped."""
    if not isinstance(value, str) or not value:
        raise ValueError(f"not a timestamp: {value!r}")
    text = _FRACTION.sub(r".\1", value.strip())
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _pem_from_field(value: Any, where: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise UntrustedPolicy(f"{where} is empty")
    if value.lstrip().startswith("-----BEGIN"):
        return value.encode("utf-8")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UntrustedPolicy(f"{where} is not base64: {e}") from e


def _parse_roots(data: Any, where: str) -> dict[str, TrustRoot]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise UntrustedPolicy(f"{where} must be an object")
    roots = {}
    for root_id, entry in data.items():
        if not isinstance(entry, Mapping):
            raise UntrustedPolicy(f"{where}.{root_id} must be an object")
        intermediates = entry.get("intermediates") or []
        if not isinstance(intermediates, list):
            raise UntrustedPolicy(f"{where}.{root_id}.intermediates must be a list")
        try:
            roots[root_id] = TrustRoot.from_pem(
                root_id,
                _pem_from_field(entry.get("certificate"), f"{where}.{root_id}.certificate"),
                [_pem_from_field(v, f"{where}.{root_id}.intermediates") for v in intermediates],
            )
        except ValueError as e:
            raise UntrustedPolicy(f"{where}.{root_id}: {e}") from e
    return roots


def _check_acyclic(steps: Mapping[str, StepRule]) -> None:
    for rule in steps.values():
        for upstream in rule.artifacts_from:
            if upstream == rule.name:
                raise UntrustedPolicy(f"step {rule.name!r} takes artifacts from itself")
            if upstream not in steps:
                raise UntrustedPolicy(f"step {rule.name!r} takes artifacts from unknown step {upstream!r}")

    state: dict[str, int] = {}  # 1 = on stack, 2 = done

    def visit(name: str, trail: tuple[str, ...]) -> None:
        if state.get(name) == 2:
            return
        if state.get(name) == 1:
            raise UntrustedPolicy(f"artifactsFrom cycle: {' -> '.join(trail + (name,))}")
        state[name] = 1
        for upstream in steps[name].artifacts_from:
            visit(upstream, trail + (name,))
        state[name] = 2

    for name in steps:
        visit(name, ())


def parse_policy(payload: bytes) -> Policy:
    """Parse policy JSON.

    Raises:
        UntrustedPolicy: For any structural problem. A policy that cannot be
            read in full is not used at all.
    """
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UntrustedPolicy(f"policy is not JSON: {e}") from e
    if not isinstance(data, Mapping):
        raise UntrustedPolicy("policy must be an object")

    try:
        expires = parse_time(data.get("expires"))
    except ValueError as e:
        raise UntrustedPolicy(f"policy expires: {e}") from e

    raw_steps = data.get("steps")
    if not isinstance(raw_steps, Mapping) or not raw_steps:
        raise UntrustedPolicy("policy has no steps")

    steps: dict[str, StepRule] = {}
    for key, raw in raw_steps.items():
        where = f"steps.{key}"
        if not isinstance(raw, Mapping):
            raise UntrustedPolicy(f"{where} must be an object")
        name = raw.get("name") or key
        if name != key:
            raise UntrustedPolicy(f"{where}.name {name!r} does not match its key")
        attestations = raw.get("attestations") or []
        if not isinstance(attestations, list):
            raise UntrustedPolicy(f"{where}.attestations must be a list")
        required = []
        for i, att in enumerate(attestations):
            if not isinstance(att, Mapping) or not isinstance(att.get("type"), str) or not att["type"]:
                raise UntrustedPolicy(f"{where}.attestations[{i}] needs a type")
            required.append(att["type"])
        functionaries_raw = raw.get("functionaries") or []
        if not isinstance(functionaries_raw, list) or not functionaries_raw:
            raise UntrustedPolicy(f"{where} has no functionaries")
        artifacts_from = raw.get("artifactsFrom") or []
        if not isinstance(artifacts_from, list) or not all(isinstance(s, str) for s in artifacts_from):
            raise UntrustedPolicy(f"{where}.artifactsFrom must be a list of step names")
        steps[key] = StepRule(
            name=key,
            required_types=tuple(dict.fromkeys(required)),
            functionaries=tuple(
                parse_functionary(f, f"{where}.functionaries[{i}]") for i, f in enumerate(functionaries_raw)
            ),
            artifacts_from=tuple(dict.fromkeys(artifacts_from)),
        )
    _check_acyclic(steps)

    public_keys: dict[str, PublicKey] = {}
    raw_keys = data.get("publickeys") or {}
    if not isinstance(raw_keys, Mapping):
        raise UntrustedPolicy("publickeys must be an object")
    for key_id, entry in raw_keys.items():
        if not isinstance(entry, Mapping):
            raise UntrustedPolicy(f"publickeys.{key_id} must be an object")
        try:
            public_keys[key_id] = load_public_key(_pem_from_field(entry.get("key"), f"publickeys.{key_id}.key"))
        except ValueError as e:
            raise UntrustedPolicy(f"publickeys.{key_id}: {e}") from e

    return Policy(
        expires=expires,
        steps=tuple(steps.values()),
        public_keys=public_keys,
        keyless_roots=_parse_roots(data.get("roots"), "roots"),
        timestamp_roots=_parse_roots(data.get("timestampauthorities"), "timestampauthorities"),
    )


def verify_policy(
    envelope: Envelope,
    trust_store: TrustStore,
    *,
    constraints: Optional[CertConstraints] = None,
    timestamp_verifier: Optional[TimestampVerifier] = None,
    require_timestamp: bool = True,
    now: Optional[datetime] = None,
) -> tuple[Policy, VerifiedIdentity]:
    """Verify the policy envelope against pinned trust, then parse it.

    `trust_store` holds the out-of-band keys/roots for the policy signer, not
    the policy's own keys. `constraints` further restricts a keyless signer.

    Raises:
        UntrustedPolicy: If no signature establishes a trusted signer or the
            verified payload is not a usable policy.
    """
    if envelope.payload_type != POLICY_PAYLOAD_TYPE:
        raise UntrustedPolicy(f"unexpected payload type {envelope.payload_type!r}")
    if trust_store.is_empty:
        raise UntrustedPolicy("no keys or roots pinned for the policy signer")

    now = now or datetime.now(timezone.utc)
    verifier = SignatureVerifier(now)
    failures: list[str] = []
    for index, signature in enumerate(envelope.signatures):
        try:
            identity = establish_identity(
                envelope.pae(),
                signature,
                trust_store,
                signature_verifier=verifier,
                timestamp_verifier=timestamp_verifier,
                require_timestamp=require_timestamp,
                now=now,
            )
            if identity.kind is IdentityKind.KEYLESS and constraints is not None:
                failed = constraints.mismatches(identity.cert_identity, identity.root_id)  # type: ignore[arg-type]
                if failed:
                    raise FunctionaryMismatch(f"policy signer fails {', '.join(failed)}")
        except VerificationError as e:
            failures.append(f"signature {index}: {e.code.value}({e.detail})")
            continue
        if identity.kind is IdentityKind.KEYLESS and (constraints is None or constraints.is_unconstrained):
            logger.warning(
                "policy signer %s is trusted on its root alone; pin an identity to restrict it",
                identity.describe(),
            )
        return parse_policy(envelope.payload), identity

    raise UntrustedPolicy("; ".join(failures))


# ─────────────────────────────────────────────────────────────────
# Matching
# ─────────────────────────────────────────────────────────────────

def missing_types(rule: StepRule, collection: Collection) -> list[str]:
    """Required types absent from the collection, as spelled in the policy."""
    present = collection.types()
    return [t for t in rule.required_types if resolve_type(t) not in present and t not in present]


def matching_functionary(rule: StepRule, identity: VerifiedIdentity) -> Optional[Functionary]:
    return next((f for f in rule.functionaries if f.matches(identity)), None)


def evaluate_step(rule: StepRule, collection: Collection, identity: VerifiedIdentity) -> list[VerificationError]:
    """All reasons the collection fails the step; empty when it satisfies it."""
    problems: list[VerificationError] = [MissingAttestationType(t) for t in missing_types(rule, collection)]
    if matching_functionary(rule, identity) is None:
        problems.append(FunctionaryMismatch(identity.describe()))
    return problems


def satisfies_step(rule: StepRule, collection: Collection, identity: VerifiedIdentity) -> bool:
    return not evaluate_step(rule, collection, identity)


__all__ = [
    "FunctionaryKind",
    "CertConstraints",
    "Functionary",
    "StepRule",
    "Policy",
    "parse_time",
    "parse_functionary",
    "parse_policy",
    "verify_policy",
    "missing_types",
    "matching_functionary",
    "evaluate_step",
    "satisfies_step",
]
