"""Signature verification for both trust paths.

    public key:  signature.keyid ──lookup──▶ trust_store.public_keys ──verify──▶ identity(publickey, keyid)
    keyless:     signature.certificate ──chain──▶ trust_store.keyless_roots
                                       ──verify with leaf key──▶ identity(keyless, leaf)

The message passed in must be the envelope's PAE bytes as received. The
keyless path does not look at the leaf's own validity window; the timestamp
verifier pins the signing time into that window. Keyless leaves must be
certified for code signing.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.x509.oid import ExtendedKeyUsageOID

from stepseal.cryptoutil import CertIdentity, certificate_identity, verify_chain, verify_message, within_validity
from stepseal.envelope import Signature
from stepseal.errors import BadSignature, MalformedEnvelope, UnknownKey, UntrustedChain
from stepseal.timestamp import TimestampVerifier
from stepseal.trust import TrustStore


class IdentityKind(str, Enum):
    PUBLIC_KEY = "publickey"
    KEYLESS = "keyless"


@dataclass(frozen=True)
class VerifiedIdentity:
    """Who produced a signature, as established by the trust store."""
    kind: IdentityKind
    key_id: str
    leaf_certificate: Optional[x509.Certificate] = None
    root_id: Optional[str] = None
    signed_time: Optional[datetime] = None

    @property
    def cert_identity(self) -> Optional[CertIdentity]:
        if self.leaf_certificate is None:
            return None
        return certificate_identity(self.leaf_certificate)

    def describe(self) -> str:
        if self.kind is IdentityKind.PUBLIC_KEY:
            return f"publickey:{self.key_id}"
        ident = self.cert_identity
        who = ident.common_name or ",".join(ident.emails) or ",".join(ident.uris) if ident else ""
        return f"keyless:{who}@{self.root_id}"

    def to_dict(self) -> dict:
        data = {"kind": self.kind.value, "key_id": self.key_id, "root_id": self.root_id}
        if self.signed_time is not None:
            data["signed_time"] = self.signed_time.isoformat()
        ident = self.cert_identity
        if ident is not None:
            data["certificate"] = ident.to_dict()
        return data


class SignatureVerifier:
    """Pure verifier; holds only the reference time for chain validation."""

    def __init__(self, at_time: Optional[datetime] = None):
        self.at_time = at_time

    def verify(
        self,
        message: bytes,
        signature: Signature,
        trust_store: TrustStore,
        root_ids: Iterable[str] = (),
    ) -> VerifiedIdentity:
        """Establish the identity behind `signature`.

        Args:
            message: Exact signed bytes (envelope PAE).
            signature: The signature to check.
            trust_store: Keys and roots to trust.
            root_ids: Restrict the keyless path to these roots (empty: all).

        Raises:
            UnknownKey, BadSignature, UntrustedChain, MalformedEnvelope
        """
        if signature.is_keyless:
            return self._verify_keyless(message, signature, trust_store, root_ids)
        return self._verify_public_key(message, signature, trust_store)

    def _verify_public_key(self, message: bytes, signature: Signature, trust_store: TrustStore) -> VerifiedIdentity:
        public_key = trust_store.public_keys.get(signature.key_id)
        if public_key is None:
            raise UnknownKey(signature.key_id)
        try:
            verify_message(public_key, signature.signature_bytes, message)
        except (InvalidSignature, TypeError) as e:
            raise BadSignature(f"signature does not verify with key {signature.key_id}") from e
        return VerifiedIdentity(kind=IdentityKind.PUBLIC_KEY, key_id=signature.key_id)

    def _verify_keyless(
        self,
        message: bytes,
        signature: Signature,
        trust_store: TrustStore,
        root_ids: Iterable[str],
    ) -> VerifiedIdentity:
        try:
            leaf = signature.leaf_certificate()
            intermediates = signature.intermediate_certificates()
        except ValueError as e:
            raise MalformedEnvelope(f"unreadable certificate: {e}") from e

        roots = trust_store.keyless_root_certificates(root_ids)
        if not roots:
            raise UntrustedChain("no keyless roots configured")

        at_time = self.at_time or datetime.now(timezone.utc)
        failures: list[str] = []
        matched = None
        for root in roots:
            try:
                verify_chain(
                    leaf,
                    intermediates + list(root.intermediates),
                    [root.certificate],
                    at_time,
                    purpose=ExtendedKeyUsageOID.CODE_SIGNING,
                )
            except UntrustedChain as e:
                failures.append(f"{root.root_id}: {e.detail}")
                continue
            matched = root
            break
        if matched is None:
            raise UntrustedChain("; ".join(failures))

        try:
            verify_message(leaf.public_key(), signature.signature_bytes, message)  # type: ignore[arg-type]
        except (InvalidSignature, TypeError) as e:
            raise BadSignature("signature does not verify with leaf certificate key") from e

        return VerifiedIdentity(
            kind=IdentityKind.KEYLESS,
            key_id=signature.key_id,
            leaf_certificate=leaf,
            root_id=matched.root_id,
        )


def verify_signature(
    message: bytes,
    signature: Signature,
    trust_store: TrustStore,
    at_time: Optional[datetime] = None,
) -> VerifiedIdentity:
    """Functional form of SignatureVerifier.verify."""
    return SignatureVerifier(at_time).verify(message, signature, trust_store)


def establish_identity(
    message: bytes,
    signature: Signature,
    trust_store: TrustStore,
    *,
    signature_verifier: Optional[SignatureVerifier] = None,
    timestamp_verifier: Optional[TimestampVerifier] = None,
    require_timestamp: bool = True,
    now: Optional[datetime] = None,
) -> VerifiedIdentity:
    """Signature check plus, for keyless signatures, the timestamp check.

    Without timestamp tokens and with `require_timestamp` off, the leaf must
    be valid at `now` instead. Tokens that are present are always verified.
    """
    now = now or datetime.now(timezone.utc)
    identity = (signature_verifier or SignatureVerifier(now)).verify(message, signature, trust_store)
    if identity.kind is not IdentityKind.KEYLESS:
        return identity

    if signature.timestamps or require_timestamp:
        signed_time = (timestamp_verifier or TimestampVerifier()).verify(
            signature, trust_store, identity.leaf_certificate
        )
        return replace(identity, signed_time=signed_time)

    if not within_validity(identity.leaf_certificate, now):  # type: ignore[arg-type]
        raise UntrustedChain("leaf certificate not valid now and no timestamp given")
    return identity


__all__ = [
    "IdentityKind",
    "VerifiedIdentity",
    "SignatureVerifier",
    "verify_signature",
    "establish_identity",
]
