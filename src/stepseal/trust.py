"""Trust store: the read-only set of keys and roots a run trusts.

A TrustStore is built once (from a verified policy, or from pinned material
for verifying the policy itself) and then shared by every worker of a run.
It is frozen and its mappings are read-only views, so sharing it across
threads needs no locking.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from cryptography import x509

from stepseal.cryptoutil import PublicKey, key_id as compute_key_id, load_certificates, load_public_key


@dataclass(frozen=True)
class TrustRoot:
    """A CA certificate plus the intermediates configured alongside it."""
    root_id: str
    certificate: x509.Certificate
    intermediates: tuple[x509.Certificate, ...] = ()

    @classmethod
    def from_pem(cls, root_id: str, certificate_pem: bytes, intermediates_pem: Iterable[bytes] = ()) -> "TrustRoot":
        certs = load_certificates(certificate_pem)
        intermediates: list[x509.Certificate] = list(certs[1:])
        for pem in intermediates_pem:
            intermediates.extend(load_certificates(pem))
        return cls(root_id=root_id, certificate=certs[0], intermediates=tuple(intermediates))


def _freeze(mapping: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class TrustStore:
    public_keys: Mapping[str, PublicKey] = field(default_factory=dict)
    keyless_roots: Mapping[str, TrustRoot] = field(default_factory=dict)
    timestamp_roots: Mapping[str, TrustRoot] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "public_keys", _freeze(self.public_keys))
        object.__setattr__(self, "keyless_roots", _freeze(self.keyless_roots))
        object.__setattr__(self, "timestamp_roots", _freeze(self.timestamp_roots))

    @classmethod
    def from_keys(cls, keys: Iterable[PublicKey], **kwargs) -> "TrustStore":
        """Store keyed by computed key IDs."""
        return cls(public_keys={compute_key_id(k): k for k in keys}, **kwargs)

    @classmethod
    def from_pem_keys(cls, pems: Iterable[bytes], **kwargs) -> "TrustStore":
        return cls.from_keys((load_public_key(p) for p in pems), **kwargs)

    @property
    def is_empty(self) -> bool:
        return not (self.public_keys or self.keyless_roots)

    def keyless_root_certificates(self, root_ids: Iterable[str] = ()) -> list[TrustRoot]:
        """Configured keyless roots, optionally restricted to `root_ids`."""
        wanted = set(root_ids)
        return [r for rid, r in self.keyless_roots.items() if not wanted or rid in wanted]


__all__ = ["TrustRoot", "TrustStore"]
