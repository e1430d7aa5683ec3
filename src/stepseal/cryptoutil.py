"""Key, signature and X.509 helpers on top of `cryptography`.

Supported signature schemes:
    Ed25519
    ECDSA   P-256/SHA-256, P-384/SHA-384, P-521/SHA-512
    RSA     PSS/SHA-256 (salt length auto), PKCS#1 v1.5/SHA-256 as fallback

Key IDs are the SHA-256 hex digest of the PEM SubjectPublicKeyInfo encoding,
so a key ID can be recomputed from nothing but the public key.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from stepseal.errors import UntrustedChain

PublicKey = Union[ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey, rsa.RSAPublicKey]
PrivateKey = Union[ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]

MAX_CHAIN_DEPTH = 8

_EC_HASHES = {
    "secp256r1": hashes.SHA256,
    "secp384r1": hashes.SHA384,
    "secp521r1": hashes.SHA512,
}

_HASHES_BY_NAME = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

_PURPOSE_NAMES = {
    ExtendedKeyUsageOID.CODE_SIGNING: "codeSigning",
    ExtendedKeyUsageOID.TIME_STAMPING: "timeStamping",
}


# ─────────────────────────────────────────────────────────────────
# Keys
# ─────────────────────────────────────────────────────────────────

def load_public_key(pem: bytes) -> PublicKey:
    """Load a PEM public key; a PEM certificate yields its subject key."""
    if b"BEGIN CERTIFICATE" in pem:
        return x509.load_pem_x509_certificate(pem).public_key()  # type: ignore[return-value]
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, (ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey, rsa.RSAPublicKey)):
        raise ValueError(f"unsupported public key type: {type(key).__name__}")
    return key


def load_private_key(pem: bytes, password: bytes | None = None) -> PrivateKey:
    key = serialization.load_pem_private_key(pem, password=password)
    if not isinstance(key, (ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
        raise ValueError(f"unsupported private key type: {type(key).__name__}")
    return key


def public_key_pem(public_key: PublicKey) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def key_id(public_key: PublicKey) -> str:
    """SHA-256 hex of the PEM-encoded public key."""
    return hashlib.sha256(public_key_pem(public_key)).hexdigest()


# ─────────────────────────────────────────────────────────────────
# Signatures
# ─────────────────────────────────────────────────────────────────

def sign_message(private_key: PrivateKey, message: bytes) -> bytes:
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(message)
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        hash_cls = _EC_HASHES.get(private_key.curve.name, hashes.SHA256)
        return private_key.sign(message, ec.ECDSA(hash_cls()))
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(
            message,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.DIGEST_LENGTH),
            hashes.SHA256(),
        )
    raise TypeError(f"unsupported private key type: {type(private_key).__name__}")


def verify_message(public_key: PublicKey, signature: bytes, message: bytes) -> None:
    """Verify `signature` over `message`.

    Raises:
        InvalidSignature: On mismatch.
        TypeError: For unsupported key types.
    """
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        public_key.verify(signature, message)
        return
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        hash_cls = _EC_HASHES.get(public_key.curve.name, hashes.SHA256)
        public_key.verify(signature, message, ec.ECDSA(hash_cls()))
        return
    if isinstance(public_key, rsa.RSAPublicKey):
        try:
            public_key.verify(
                signature,
                message,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.AUTO),
                hashes.SHA256(),
            )
        except InvalidSignature:
            public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
        return
    raise TypeError(f"unsupported public key type: {type(public_key).__name__}")


def verify_with_hash(public_key: PublicKey, signature: bytes, data: bytes, hash_name: str, scheme: str) -> None:
    """Verify a CMS-style signature where the hash algorithm is declared.

    `scheme` is the asn1crypto signature_algo name: ``rsassa_pkcs1v15``,
    ``rsassa_pss``, ``ecdsa`` or ``ed25519``.
    """
    hash_cls = _HASHES_BY_NAME.get(hash_name)
    if hash_cls is None:
        raise TypeError(f"unsupported hash algorithm: {hash_name}")
    if scheme == "ed25519" and isinstance(public_key, ed25519.Ed25519PublicKey):
        public_key.verify(signature, data)
    elif scheme == "ecdsa" and isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key.verify(signature, data, ec.ECDSA(hash_cls()))
    elif scheme == "rsassa_pkcs1v15" and isinstance(public_key, rsa.RSAPublicKey):
        public_key.verify(signature, data, padding.PKCS1v15(), hash_cls())
    elif scheme == "rsassa_pss" and isinstance(public_key, rsa.RSAPublicKey):
        public_key.verify(
            signature,
            data,
            padding.PSS(mgf=padding.MGF1(hash_cls()), salt_length=padding.PSS.AUTO),
            hash_cls(),
        )
    else:
        raise TypeError(f"signature scheme {scheme!r} does not fit key type {type(public_key).__name__}")


# ─────────────────────────────────────────────────────────────────
# Certificates
# ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CertIdentity:
    """The identity fields a keyless functionary can constrain."""
    common_name: str
    dns_names: tuple[str, ...]
    emails: tuple[str, ...]
    organizations: tuple[str, ...]
    uris: tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "common_name": self.common_name,
            "dns_names": list(self.dns_names),
            "emails": list(self.emails),
            "organizations": list(self.organizations),
            "uris": list(self.uris),
        }


def load_certificates(pem: bytes) -> list[x509.Certificate]:
    """Load every certificate in a PEM bundle."""
    certs = x509.load_pem_x509_certificates(pem)
    if not certs:
        raise ValueError("no certificate found in PEM data")
    return certs


def ensure_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def within_validity(cert: x509.Certificate, moment: datetime) -> bool:
    moment = ensure_utc(moment)
    return cert.not_valid_before_utc <= moment <= cert.not_valid_after_utc


def certificate_identity(cert: x509.Certificate) -> CertIdentity:
    subject = cert.subject
    cn_attrs = subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    orgs = tuple(str(a.value) for a in subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME))
    emails = [str(a.value) for a in subject.get_attributes_for_oid(NameOID.EMAIL_ADDRESS)]
    dns_names: list[str] = []
    uris: list[str] = []
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        san = None
    if san is not None:
        dns_names = san.get_values_for_type(x509.DNSName)
        emails.extend(san.get_values_for_type(x509.RFC822Name))
        uris = san.get_values_for_type(x509.UniformResourceIdentifier)
    return CertIdentity(
        common_name=str(cn_attrs[0].value) if cn_attrs else "",
        dns_names=tuple(dns_names),
        emails=tuple(dict.fromkeys(emails)),
        organizations=orgs,
        uris=tuple(uris),
    )


def _extension(cert: x509.Certificate, extension_class: type) -> Optional[Any]:
    try:
        return cert.extensions.get_extension_for_class(extension_class).value
    except x509.ExtensionNotFound:
        return None
    except ValueError as e:
        raise UntrustedChain(f"unreadable extensions in {cert.subject.rfc4514_string()}: {e}") from e


def _is_ca(cert: x509.Certificate) -> bool:
    constraints = _extension(cert, x509.BasicConstraints)
    return bool(constraints is not None and constraints.ca)


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    if cert.issuer != issuer.subject:
        return False
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _purpose_name(purpose: x509.ObjectIdentifier) -> str:
    return _PURPOSE_NAMES.get(purpose, purpose.dotted_string)


def _check_path(chain: Sequence[x509.Certificate], purpose: Optional[x509.ObjectIdentifier]) -> None:
    """Extended key usage along the path, and issuer constraints."""
    if purpose is not None:
        usages = _extension(chain[0], x509.ExtendedKeyUsage)
        if usages is None or purpose not in usages:
            raise UntrustedChain(
                f"{chain[0].subject.rfc4514_string()} is not certified for {_purpose_name(purpose)}"
            )
        for issuer in chain[1:]:
            usages = _extension(issuer, x509.ExtendedKeyUsage)
            if usages is not None and purpose not in usages and ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE not in usages:
                raise UntrustedChain(
                    f"{issuer.subject.rfc4514_string()} may not issue {_purpose_name(purpose)} certificates"
                )

    # chain[depth] has depth - 1 intermediates below it
    for depth, issuer in enumerate(chain[1:], start=1):
        key_usage = _extension(issuer, x509.KeyUsage)
        if key_usage is not None and not key_usage.key_cert_sign:
            raise UntrustedChain(f"{issuer.subject.rfc4514_string()} may not sign certificates")
        constraints = _extension(issuer, x509.BasicConstraints)
        if constraints is not None and constraints.path_length is not None and depth - 1 > constraints.path_length:
            raise UntrustedChain(
                f"{issuer.subject.rfc4514_string()} allows {constraints.path_length} intermediates, path has {depth - 1}"
            )


def verify_chain(
    leaf: x509.Certificate,
    intermediates: Sequence[x509.Certificate],
    roots: Sequence[x509.Certificate],
    at_time: datetime,
    check_leaf_validity: bool = False,
    purpose: Optional[x509.ObjectIdentifier] = None,
) -> list[x509.Certificate]:
    """Build and check a path from `leaf` to one of `roots`.

    Intermediates and the root must be valid at `at_time`. The leaf's own
    window is only checked when `check_leaf_validity` is set; keyless leaves
    are checked against a timestamp instead.

    With `purpose` set, the leaf must carry that extended key usage and no
    issuer may restrict its own usages to exclude it. Issuers must allow
    certificate signing and honour pathLenConstraint.

    Returns:
        The chain, leaf first and root last.

    Raises:
        UntrustedChain: No path to a root, an expired/not-yet-valid link, or
            a usage or path-length violation.
    """
    at_time = ensure_utc(at_time)
    if check_leaf_validity and not within_validity(leaf, at_time):
        raise UntrustedChain(f"leaf certificate not valid at {at_time.isoformat()}")

    if any(leaf == root for root in roots):
        _check_path([leaf], purpose)
        return [leaf]

    chain = [leaf]
    current = leaf
    pool = list(intermediates)
    for _ in range(MAX_CHAIN_DEPTH):
        for root in roots:
            if _issued_by(current, root):
                if not within_validity(root, at_time):
                    raise UntrustedChain(f"root {root.subject.rfc4514_string()} not valid at {at_time.isoformat()}")
                chain.append(root)
                _check_path(chain, purpose)
                return chain
        issuer = next((c for c in pool if _issued_by(current, c) and _is_ca(c)), None)
        if issuer is None:
            raise UntrustedChain(f"no trusted issuer for {current.subject.rfc4514_string()}")
        if not within_validity(issuer, at_time):
            raise UntrustedChain(f"intermediate {issuer.subject.rfc4514_string()} not valid at {at_time.isoformat()}")
        pool.remove(issuer)
        chain.append(issuer)
        current = issuer
    raise UntrustedChain("certificate chain too long")


__all__ = [
    "PublicKey",
    "PrivateKey",
    "CertIdentity",
    "load_public_key",
    "load_private_key",
    "public_key_pem",
    "key_id",
    "sign_message",
    "verify_message",
    "verify_with_hash",
    "load_certificates",
    "ensure_utc",
    "within_validity",
    "certificate_identity",
    "verify_chain",
]
