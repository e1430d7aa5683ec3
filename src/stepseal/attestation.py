"""
Attestations and collections.

A collection is the predicate of one in-toto statement: every attestation a
single signer recorded for one build step.

    {"_type": "https://in-toto.io/Statement/v0.1",
     "subject": [{"name": "...", "digest": {"sha256": "..."}}],
     "predicateType": "https://witness.testifysec.com/attestation-collection/v0.1",
     "predicate": {"name": "build",
                   "attestations": [{"type": "<uri>", "attestation": {...}}, ...]}}

Attestation types form a closed set of kinds. Known URIs map to a kind, and
anything else is OTHER: carried through untouched and still matchable by its
URI. Subject extraction dispatches on the kind, never on the predicate's
Python type.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from stepseal.digests import normalize_digests
from stepseal.envelope import INTOTO_PAYLOAD_TYPE, Envelope
from stepseal.errors import MalformedEnvelope

COLLECTION_PREDICATE_TYPES = frozenset({
    "https://witness.testifysec.com/attestation-collection/v0.1",
    "https://witness.dev/attestation-collection/v0.1",
})
STATEMENT_TYPES = frozenset({
    "https://in-toto.io/Statement/v0.1",
    "https://in-toto.io/Statement/v1",
})
ATTESTATION_URI_PREFIX = "https://witness.dev/attestations/"


class AttestationKind(str, Enum):
    MATERIAL = "material"
    COMMAND_RUN = "command-run"
    PRODUCT = "product"
    SBOM = "sbom"
    SECRETSCAN = "secretscan"
    SLSA = "slsa"
    VEX = "vex"
    ENVIRONMENT = "environment"
    GIT = "git"
    OTHER = "other"

    @property
    def uri(self) -> str:
        return f"{ATTESTATION_URI_PREFIX}{self.value}/v0.1"


_KIND_BY_URI = {kind.uri: kind for kind in AttestationKind if kind is not AttestationKind.OTHER}
_KIND_BY_ALIAS = {kind.value: kind for kind in AttestationKind if kind is not AttestationKind.OTHER}


def kind_of(type_uri: str) -> AttestationKind:
    return _KIND_BY_URI.get(type_uri, AttestationKind.OTHER)


def resolve_type(name: str) -> str:
    """Expand a short alias (``"product"``) to its URI; URIs pass through."""
    kind = _KIND_BY_ALIAS.get(name)
    return kind.uri if kind is not None else name


@dataclass(frozen=True)
class Subject:
    name: str
    digests: Mapping[str, str]

    def __post_init__(self) -> None:
        object.__setattr__(self, "digests", MappingProxyType(normalize_digests(self.digests)))

    def to_dict(self) -> dict:
        return {"name": self.name, "digest": dict(self.digests)}


@dataclass(frozen=True)
class Attestation:
    type: str
    subjects: tuple[Subject, ...]
    predicate: Any

    @property
    def kind(self) -> AttestationKind:
        return kind_of(self.type)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "kind": self.kind.value,
            "subjects": [s.to_dict() for s in self.subjects],
        }


# ─────────────────────────────────────────────────────────────────
# Subject extraction per kind
# ─────────────────────────────────────────────────────────────────

def _material_subjects(predicate: Any) -> tuple[Subject, ...]:
    # {path: {alg: hex}}
    if not isinstance(predicate, Mapping):
        raise MalformedEnvelope("material attestation must map paths to digests")
    subjects = []
    for path, digests in sorted(predicate.items()):
        if not isinstance(digests, Mapping):
            raise MalformedEnvelope(f"material {path!r} has no digest map")
        subjects.append(Subject(name=path, digests=digests))
    return tuple(subjects)


def _product_subjects(predicate: Any) -> tuple[Subject, ...]:
    # {path: {"mime_type": ..., "digest": {alg: hex}}}
    if not isinstance(predicate, Mapping):
        raise MalformedEnvelope("product attestation must map paths to products")
    subjects = []
    for path, product in sorted(predicate.items()):
        if not isinstance(product, Mapping) or not isinstance(product.get("digest"), Mapping):
            raise MalformedEnvelope(f"product {path!r} has no digest")
        subjects.append(Subject(name=path, digests=product["digest"]))
    return tuple(subjects)


def _no_subjects(predicate: Any) -> tuple[Subject, ...]:
    return ()


_SUBJECT_EXTRACTORS: dict[AttestationKind, Callable[[Any], tuple[Subject, ...]]] = {
    AttestationKind.MATERIAL: _material_subjects,
    AttestationKind.PRODUCT: _product_subjects,
}


def _explicit_subjects(raw: Any, where: str) -> tuple[Subject, ...]:
    if not isinstance(raw, list):
        raise MalformedEnvelope(f"{where} must be a list")
    out = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, Mapping) or not isinstance(entry.get("name"), str):
            raise MalformedEnvelope(f"{where}[{i}] needs a name")
        digests = entry.get("digest", entry.get("digests"))
        if not isinstance(digests, Mapping):
            raise MalformedEnvelope(f"{where}[{i}] needs a digest map")
        out.append(Subject(name=entry["name"], digests=digests))
    return tuple(out)


def parse_attestation(entry: Any, index: int = 0) -> Attestation:
    if not isinstance(entry, Mapping) or not isinstance(entry.get("type"), str):
        raise MalformedEnvelope(f"attestations[{index}] needs a type")
    type_uri = entry["type"]
    predicate = entry.get("attestation")
    try:
        if "subjects" in entry:
            subjects = _explicit_subjects(entry["subjects"], f"attestations[{index}].subjects")
        else:
            subjects = _SUBJECT_EXTRACTORS.get(kind_of(type_uri), _no_subjects)(predicate)
    except ValueError as e:
        raise MalformedEnvelope(f"attestations[{index}]: {e}") from e
    return Attestation(type=type_uri, subjects=subjects, predicate=predicate)


# ─────────────────────────────────────────────────────────────────
# Collections
# ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Collection:
    step_name: str
    attestations: tuple[Attestation, ...]
    statement_subjects: tuple[Subject, ...] = ()

    def types(self) -> frozenset[str]:
        return frozenset(a.type for a in self.attestations)

    def subjects_of(self, kind: AttestationKind) -> tuple[Subject, ...]:
        return tuple(s for a in self.attestations if a.kind is kind for s in a.subjects)

    def materials(self) -> tuple[Subject, ...]:
        return self.subjects_of(AttestationKind.MATERIAL)

    def products(self) -> tuple[Subject, ...]:
        return self.subjects_of(AttestationKind.PRODUCT)

    def to_dict(self) -> dict:
        return {
            "step": self.step_name,
            "attestations": [a.to_dict() for a in self.attestations],
            "subjects": [s.to_dict() for s in self.statement_subjects],
        }


def parse_collection(payload: bytes) -> Collection:
    """Parse an in-toto statement carrying an attestation collection.

    Raises:
        MalformedEnvelope: If the payload is not a collection statement.
    """
    try:
        statement = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEnvelope(f"statement is not JSON: {e}") from e
    if not isinstance(statement, Mapping):
        raise MalformedEnvelope("statement must be an object")
    if statement.get("_type") not in STATEMENT_TYPES:
        raise MalformedEnvelope(f"unsupported statement type {statement.get('_type')!r}")
    if statement.get("predicateType") not in COLLECTION_PREDICATE_TYPES:
        raise MalformedEnvelope(f"predicate is not an attestation collection: {statement.get('predicateType')!r}")

    predicate = statement.get("predicate")
    if not isinstance(predicate, Mapping):
        raise MalformedEnvelope("statement predicate missing")
    step_name = predicate.get("name")
    if not isinstance(step_name, str) or not step_name:
        raise MalformedEnvelope("collection has no step name")
    entries = predicate.get("attestations") or []
    if not isinstance(entries, list):
        raise MalformedEnvelope("collection attestations must be a list")

    try:
        statement_subjects = _explicit_subjects(statement.get("subject") or [], "subject")
    except ValueError as e:
        raise MalformedEnvelope(f"subject: {e}") from e

    return Collection(
        step_name=step_name,
        attestations=tuple(parse_attestation(e, i) for i, e in enumerate(entries)),
        statement_subjects=statement_subjects,
    )


def collection_from_envelope(envelope: Envelope) -> Collection:
    if envelope.payload_type != INTOTO_PAYLOAD_TYPE:
        raise MalformedEnvelope(f"unexpected payload type {envelope.payload_type!r}")
    return parse_collection(envelope.payload)


def build_statement(
    step_name: str,
    attestations: list[dict],
    subjects: Optional[list[dict]] = None,
) -> bytes:
    """Serialize a collection statement. Used by policy authors' tooling and tests."""
    statement = {
        "_type": "https://in-toto.io/Statement/v0.1",
        "subject": subjects or [],
        "predicateType": "https://witness.testifysec.com/attestation-collection/v0.1",
        "predicate": {"name": step_name, "attestations": attestations},
    }
    return json.dumps(statement, separators=(",", ":")).encode("utf-8")


__all__ = [
    "AttestationKind",
    "Subject",
    "Attestation",
    "Collection",
    "kind_of",
    "resolve_type",
    "parse_attestation",
    "parse_collection",
    "collection_from_envelope",
    "build_statement",
]
