"""
Timestamp verification (RFC 3161 counter-signatures).

Keyless signing certificates live for minutes. A timestamp authority
counter-signs the signature bytes, and the signed time it attests has to
fall inside the leaf certificate's validity window:

    leaf.not_before <= TSTInfo.genTime <= leaf.not_after

Checks per token:
    1. CMS SignedData wrapping a TSTInfo
    2. message imprint == hash(signature bytes)
    3. TSA signer certificate chains to timestamp_roots[issuer]
       (every configured TSA root when the token names no issuer)
    4. SignerInfo signature over the signed attributes, and the
       message-digest attribute matches the TSTInfo bytes
    5. genTime inside the leaf window

With several tokens the default is OR: one good token is enough, so a
single unreachable or compromised TSA does not break verification.
`require_all=True` switches to AND.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from asn1crypto import cms, core, tsp
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.x509.oid import ExtendedKeyUsageOID

from stepseal.cryptoutil import ensure_utc, verify_chain, verify_with_hash
from stepseal.envelope import Signature, TimestampToken
from stepseal.errors import (
    BadTimestamp,
    MissingTimestamp,
    TimestampOutsideCertValidity,
    UnknownTSARoot,
    UntrustedChain,
    VerificationError,
)
from stepseal.trust import TrustRoot, TrustStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedTimestamp:
    issuer_root_id: str
    signed_time: datetime

    def to_dict(self) -> dict:
        return {"issuer_root_id": self.issuer_root_id, "signed_time": self.signed_time.isoformat()}


@dataclass(frozen=True)
class ParsedToken:
    """Unverified contents of a TimeStampToken."""
    signed_data: cms.SignedData
    tst_info_der: bytes
    tst_info: tsp.TSTInfo

    @property
    def signed_time(self) -> datetime:
        return ensure_utc(self.tst_info["gen_time"].native)

    @property
    def imprint_algorithm(self) -> str:
        return self.tst_info["message_imprint"]["hash_algorithm"]["algorithm"].native

    @property
    def imprint(self) -> bytes:
        return self.tst_info["message_imprint"]["hashed_message"].native


def parse_token(token_bytes: bytes) -> ParsedToken:
    """Decode the ASN.1 structure of a token without trusting it.

    Raises:
        BadTimestamp: If the token is not a SignedData TSTInfo.
    """
    try:
        content_info = cms.ContentInfo.load(token_bytes)
        if content_info["content_type"].native != "signed_data":
            raise BadTimestamp("timestamp token is not CMS SignedData")
        signed_data = content_info["content"]
        encap = signed_data["encap_content_info"]
        if encap["content_type"].native != "tst_info":
            raise BadTimestamp("timestamp token does not encapsulate TSTInfo")
        tst_info_der = encap["content"].contents
        tst_info = tsp.TSTInfo.load(tst_info_der)
        # Force a full parse so structural errors surface here
        tst_info.native
    except BadTimestamp:
        raise
    except (ValueError, TypeError, KeyError) as e:
        raise BadTimestamp(f"unparseable timestamp token: {e}") from e
    return ParsedToken(signed_data=signed_data, tst_info_der=tst_info_der, tst_info=tst_info)


def _embedded_certificates(signed_data: cms.SignedData) -> list[x509.Certificate]:
    certs_field = signed_data["certificates"]
    if isinstance(certs_field, core.Void):
        return []
    out = []
    for choice in certs_field:
        if choice.name == "certificate":
            out.append(x509.load_der_x509_certificate(choice.chosen.dump()))
    return out


def _signer_matches(cert: x509.Certificate, sid: cms.SignerIdentifier) -> bool:
    if sid.name == "issuer_and_serial_number":
        ias = sid.chosen
        return (
            cert.serial_number == ias["serial_number"].native
            and cert.issuer.public_bytes() == ias["issuer"].dump()
        )
    if sid.name == "subject_key_identifier":
        try:
            ski = cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value.digest
        except x509.ExtensionNotFound:
            return False
        return ski == sid.chosen.native
    return False


def _check_signer_info(parsed: ParsedToken, signer_info: cms.SignerInfo, signer: x509.Certificate) -> None:
    hash_name = signer_info["digest_algorithm"]["algorithm"].native
    scheme = signer_info["signature_algorithm"].signature_algo
    signature = signer_info["signature"].native

    signed_attrs = signer_info["signed_attrs"]
    if isinstance(signed_attrs, core.Void):
        to_verify = parsed.tst_info_der
    else:
        message_digest = None
        for attr in signed_attrs:
            if attr["type"].native == "message_digest":
                message_digest = attr["values"][0].native
        if message_digest is None:
            raise BadTimestamp("signed attributes lack message-digest")
        if message_digest != hashlib.new(hash_name, parsed.tst_info_der).digest():
            raise BadTimestamp("message-digest attribute does not match TSTInfo")
        # Signed attributes are signed as an explicit SET OF, not the [0] form
        to_verify = b"\x31" + signed_attrs.dump()[1:]

    try:
        verify_with_hash(signer.public_key(), signature, to_verify, hash_name, scheme)  # type: ignore[arg-type]
    except (InvalidSignature, TypeError) as e:
        raise BadTimestamp(f"TSA signature invalid: {e}") from e


class TimestampVerifier:
    """Verify the timestamp tokens attached to a keyless signature."""

    def __init__(self, require_all: bool = False):
        self.require_all = require_all

    def verify_token(
        self,
        token: TimestampToken,
        signature_bytes: bytes,
        trust_store: TrustStore,
    ) -> VerifiedTimestamp:
        """Verify one token's origin and imprint; returns its trusted time.

        Raises:
            UnknownTSARoot, BadTimestamp
        """
        if token.issuer_root_id is not None:
            root = trust_store.timestamp_roots.get(token.issuer_root_id)
            if root is None:
                raise UnknownTSARoot(token.issuer_root_id)
            candidates: list[TrustRoot] = [root]
        else:
            candidates = list(trust_store.timestamp_roots.values())
            if not candidates:
                raise UnknownTSARoot("no timestamp authorities configured")

        parsed = parse_token(token.token_bytes)
        try:
            expected = hashlib.new(parsed.imprint_algorithm, signature_bytes).digest()
        except ValueError as e:
            raise BadTimestamp(f"unsupported imprint algorithm {parsed.imprint_algorithm}") from e
        if expected != parsed.imprint:
            raise BadTimestamp("timestamp imprint does not cover this signature")

        # SignedData is parsed lazily; bad algorithm OIDs or certificates surface here
        try:
            return self._verify_origin(token, parsed, candidates)
        except (ValueError, TypeError, KeyError) as e:
            raise BadTimestamp(f"malformed timestamp token: {e}") from e

    def _verify_origin(
        self,
        token: TimestampToken,
        parsed: ParsedToken,
        candidates: list[TrustRoot],
    ) -> VerifiedTimestamp:
        signer_infos = parsed.signed_data["signer_infos"]
        if len(signer_infos) != 1:
            raise BadTimestamp("timestamp token must have exactly one signer")
        signer_info = signer_infos[0]
        signed_time = parsed.signed_time
        embedded = _embedded_certificates(parsed.signed_data)

        failures: list[str] = []
        for root in candidates:
            pool = embedded + list(root.intermediates) + [root.certificate]
            signer = next((c for c in pool if _signer_matches(c, signer_info["sid"])), None)
            if signer is None:
                failures.append(f"{root.root_id}: signer certificate not found")
                continue
            try:
                verify_chain(
                    signer,
                    embedded + list(root.intermediates),
                    [root.certificate],
                    signed_time,
                    check_leaf_validity=True,
                    purpose=ExtendedKeyUsageOID.TIME_STAMPING,
                )
            except UntrustedChain as e:
                failures.append(f"{root.root_id}: {e.detail}")
                continue
            _check_signer_info(parsed, signer_info, signer)
            return VerifiedTimestamp(issuer_root_id=root.root_id, signed_time=signed_time)

        if token.issuer_root_id is not None:
            raise BadTimestamp("; ".join(failures))
        raise UnknownTSARoot("; ".join(failures))

    def verify(
        self,
        signature: Signature,
        trust_store: TrustStore,
        leaf_certificate: Optional[x509.Certificate] = None,
    ) -> datetime:
        """Return the trusted signing time of a keyless signature.

        With OR semantics the earliest good token wins. Errors of the other
        tokens are dropped once one token passes.

        Raises:
            MissingTimestamp: The signature carries no tokens.
            UnknownTSARoot, BadTimestamp, TimestampOutsideCertValidity
        """
        results = self.verify_all(signature, trust_store, leaf_certificate)
        return min(r.signed_time for r in results)

    def verify_all(
        self,
        signature: Signature,
        trust_store: TrustStore,
        leaf_certificate: Optional[x509.Certificate] = None,
    ) -> list[VerifiedTimestamp]:
        if not signature.timestamps:
            raise MissingTimestamp("keyless signature has no timestamp tokens")
        leaf = leaf_certificate or signature.leaf_certificate()

        good: list[VerifiedTimestamp] = []
        errors: list[VerificationError] = []
        for token in signature.timestamps:
            try:
                verified = self.verify_token(token, signature.signature_bytes, trust_store)
                _check_window(leaf, verified.signed_time)
            except VerificationError as e:
                logger.debug("timestamp token rejected: %s", e)
                errors.append(e)
                continue
            good.append(verified)

        if self.require_all and errors:
            raise errors[0]
        if not good:
            raise errors[0]
        return good


def _check_window(leaf: x509.Certificate, signed_time: datetime) -> None:
    if not (leaf.not_valid_before_utc <= signed_time <= leaf.not_valid_after_utc):
        raise TimestampOutsideCertValidity(
            f"signed at {signed_time.isoformat()}, certificate valid "
            f"{leaf.not_valid_before_utc.isoformat()}..{leaf.not_valid_after_utc.isoformat()}"
        )


def verify_timestamps(
    signature: Signature,
    trust_store: TrustStore,
    require_all: bool = False,
) -> datetime:
    """Functional form of TimestampVerifier.verify."""
    return TimestampVerifier(require_all=require_all).verify(signature, trust_store)


__all__ = [
    "VerifiedTimestamp",
    "ParsedToken",
    "parse_token",
    "TimestampVerifier",
    "verify_timestamps",
]
