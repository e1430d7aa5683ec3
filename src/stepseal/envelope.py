"""
Envelope codec (DSSE).

Wire form, field order fixed so encoding is deterministic:

    {"payload": "<base64>",
     "payloadType": "<uri>",
     "signatures": [{"keyid": "...", "sig": "<base64>",
                     "certificate": "<base64 PEM>",        # keyless only
                     "intermediates": ["<base64 PEM>"],     # keyless only
                     "timestamps": [{"type": "tsp", "data": "<base64 DER>",
                                     "issuer": "<tsa id>"}]}]}

Signatures cover the DSSE pre-authentication encoding of the payload bytes
exactly as received:

    PAE(type, body) = "DSSEv1" SP len(type) SP type SP len(body) SP body

`Envelope.payload` always holds the decoded bytes from the wire and
`Envelope.raw` the original blob; nothing is re-serialized before
verification.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from cryptography import x509

from stepseal.cryptoutil import PrivateKey, key_id as compute_key_id, load_certificates, sign_message
from stepseal.errors import MalformedEnvelope

INTOTO_PAYLOAD_TYPE = "https://in-toto.io/Statement/v0.1"
POLICY_PAYLOAD_TYPE = "https://witness.testifysec.com/policy/v0.1"
TIMESTAMP_KIND_TSP = "tsp"


@dataclass(frozen=True)
class TimestampToken:
    """An RFC 3161 counter-signature over one signature's bytes.

    The signed time is only trusted once TimestampVerifier has checked the
    token; see VerifiedTimestamp.
    """
    token_bytes: bytes
    issuer_root_id: Optional[str] = None
    kind: str = TIMESTAMP_KIND_TSP

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": self.kind, "data": _b64(self.token_bytes)}
        if self.issuer_root_id:
            data["issuer"] = self.issuer_root_id
        return data


@dataclass(frozen=True)
class Signature:
    """One signature of an envelope.

    A present `certificate` selects the keyless trust path; otherwise
    `key_id` names a long-lived key in the trust store.
    """
    key_id: str
    signature_bytes: bytes
    certificate: Optional[bytes] = None
    intermediates: tuple[bytes, ...] = ()
    timestamps: tuple[TimestampToken, ...] = ()

    @property
    def is_keyless(self) -> bool:
        return self.certificate is not None

    def leaf_certificate(self) -> x509.Certificate:
        if self.certificate is None:
            raise ValueError("signature carries no certificate")
        return load_certificates(self.certificate)[0]

    def intermediate_certificates(self) -> list[x509.Certificate]:
        certs: list[x509.Certificate] = []
        for pem in self.intermediates:
            certs.extend(load_certificates(pem))
        # A bundled PEM in `certificate` may carry the chain after the leaf
        if self.certificate is not None:
            certs.extend(load_certificates(self.certificate)[1:])
        return certs

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"keyid": self.key_id, "sig": _b64(self.signature_bytes)}
        if self.certificate is not None:
            data["certificate"] = _b64(self.certificate)
        if self.intermediates:
            data["intermediates"] = [_b64(pem) for pem in self.intermediates]
        if self.timestamps:
            data["timestamps"] = [t.to_dict() for t in self.timestamps]
        return data


@dataclass(frozen=True)
class Envelope:
    payload_type: str
    payload: bytes
    signatures: tuple[Signature, ...]
    raw: Optional[bytes] = field(default=None, compare=False, repr=False)

    def pae(self) -> bytes:
        """The exact bytes every signature of this envelope covers."""
        return pae(self.payload_type, self.payload)

    def to_dict(self) -> dict:
        return {
            "payload": _b64(self.payload),
            "payloadType": self.payload_type,
            "signatures": [s.to_dict() for s in self.signatures],
        }

    def encode(self) -> bytes:
        return encode_envelope(self)


def pae(payload_type: str, payload: bytes) -> bytes:
    """DSSE v1 pre-authentication encoding."""
    type_bytes = payload_type.encode("utf-8")
    return b"DSSEv1 %d %s %d %s" % (len(type_bytes), type_bytes, len(payload), payload)


# ─────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────

def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: Any, what: str) -> bytes:
    if not isinstance(value, str):
        raise MalformedEnvelope(f"{what} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedEnvelope(f"{what} is not valid base64: {e}") from e


def _pem_field(value: Any, what: str) -> bytes:
    # Accept raw PEM text as well as base64-wrapped PEM bytes
    if isinstance(value, str) and value.lstrip().startswith("-----BEGIN"):
        pem = value.encode("utf-8")
    else:
        pem = _unb64(value, what)
    if b"-----BEGIN" not in pem:
        raise MalformedEnvelope(f"{what} is not PEM data")
    return pem


def _decode_timestamp(entry: Any, index: int) -> TimestampToken:
    if not isinstance(entry, Mapping):
        raise MalformedEnvelope(f"timestamps[{index}] must be an object")
    kind = entry.get("type", TIMESTAMP_KIND_TSP)
    if kind != TIMESTAMP_KIND_TSP:
        raise MalformedEnvelope(f"timestamps[{index}] has unsupported type {kind!r}")
    issuer = entry.get("issuer")
    if issuer is not None and not isinstance(issuer, str):
        raise MalformedEnvelope(f"timestamps[{index}].issuer must be a string")
    token = _unb64(entry.get("data"), f"timestamps[{index}].data")
    if not token:
        raise MalformedEnvelope(f"timestamps[{index}].data is empty")
    return TimestampToken(token_bytes=token, issuer_root_id=issuer or None, kind=kind)


def _decode_signature(entry: Any, index: int) -> Signature:
    if not isinstance(entry, Mapping):
        raise MalformedEnvelope(f"signatures[{index}] must be an object")
    keyid = entry.get("keyid", "")
    if not isinstance(keyid, str):
        raise MalformedEnvelope(f"signatures[{index}].keyid must be a string")
    sig = _unb64(entry.get("sig"), f"signatures[{index}].sig")
    if not sig:
        raise MalformedEnvelope(f"signatures[{index}].sig is empty")

    certificate = None
    if entry.get("certificate"):
        certificate = _pem_field(entry["certificate"], f"signatures[{index}].certificate")

    intermediates_raw = entry.get("intermediates") or []
    if not isinstance(intermediates_raw, list):
        raise MalformedEnvelope(f"signatures[{index}].intermediates must be a list")
    intermediates = tuple(
        _pem_field(v, f"signatures[{index}].intermediates[{i}]") for i, v in enumerate(intermediates_raw)
    )

    timestamps_raw = entry.get("timestamps") or []
    if not isinstance(timestamps_raw, list):
        raise MalformedEnvelope(f"signatures[{index}].timestamps must be a list")
    timestamps = tuple(_decode_timestamp(t, i) for i, t in enumerate(timestamps_raw))

    if not keyid and certificate is None:
        raise MalformedEnvelope(f"signatures[{index}] has neither keyid nor certificate")

    return Signature(
        key_id=keyid,
        signature_bytes=sig,
        certificate=certificate,
        intermediates=intermediates,
        timestamps=timestamps,
    )


def decode_envelope(blob: Union[bytes, str, Mapping[str, Any]]) -> Envelope:
    """Parse an envelope.

    Raises:
        MalformedEnvelope: If the structure or any encoded field is invalid.
    """
    raw: Optional[bytes] = None
    if isinstance(blob, (bytes, str)):
        raw = blob.encode("utf-8") if isinstance(blob, str) else bytes(blob)
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEnvelope(f"envelope is not JSON: {e}") from e
    else:
        data = blob

    if not isinstance(data, Mapping):
        raise MalformedEnvelope("envelope must be a JSON object")

    payload_type = data.get("payloadType")
    if not isinstance(payload_type, str) or not payload_type:
        raise MalformedEnvelope("payloadType missing")
    payload = _unb64(data.get("payload"), "payload")

    signatures_raw = data.get("signatures")
    if not isinstance(signatures_raw, list) or not signatures_raw:
        raise MalformedEnvelope("envelope must carry at least one signature")
    signatures = tuple(_decode_signature(s, i) for i, s in enumerate(signatures_raw))

    return Envelope(payload_type=payload_type, payload=payload, signatures=signatures, raw=raw)


def encode_envelope(envelope: Envelope) -> bytes:
    """Deterministic JSON encoding of an envelope."""
    return json.dumps(envelope.to_dict(), separators=(",", ":")).encode("utf-8")


def decode_payload_json(envelope: Envelope) -> Any:
    """Parse the envelope payload as JSON.

    Raises:
        MalformedEnvelope: If the payload is not UTF-8 JSON.
    """
    try:
        return json.loads(envelope.payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEnvelope(f"payload is not JSON: {e}") from e


# ─────────────────────────────────────────────────────────────────
# Signing
# ─────────────────────────────────────────────────────────────────

Timestamper = Callable[[bytes], TimestampToken]


def make_signature(
    payload_type: str,
    payload: bytes,
    private_key: PrivateKey,
    *,
    certificate: Optional[bytes] = None,
    intermediates: Sequence[bytes] = (),
    timestampers: Iterable[Timestamper] = (),
    key_id: Optional[str] = None,
) -> Signature:
    """Sign `payload` and counter-sign the signature with each timestamper."""
    sig = sign_message(private_key, pae(payload_type, payload))
    tokens = tuple(stamp(sig) for stamp in timestampers)
    return Signature(
        key_id=key_id if key_id is not None else compute_key_id(private_key.public_key()),
        signature_bytes=sig,
        certificate=certificate,
        intermediates=tuple(intermediates),
        timestamps=tokens,
    )


def sign_envelope(
    payload: bytes,
    payload_type: str,
    private_key: PrivateKey,
    **kwargs: Any,
) -> Envelope:
    """Build a single-signature envelope. Keyword arguments go to make_signature."""
    signature = make_signature(payload_type, payload, private_key, **kwargs)
    return Envelope(payload_type=payload_type, payload=payload, signatures=(signature,))


def add_signature(envelope: Envelope, private_key: PrivateKey, **kwargs: Any) -> Envelope:
    """Return a copy of `envelope` with one more signature over the same bytes."""
    signature = make_signature(envelope.payload_type, envelope.payload, private_key, **kwargs)
    return replace(envelope, signatures=envelope.signatures + (signature,), raw=None)


__all__ = [
    "INTOTO_PAYLOAD_TYPE",
    "POLICY_PAYLOAD_TYPE",
    "TimestampToken",
    "Signature",
    "Envelope",
    "Timestamper",
    "pae",
    "decode_envelope",
    "encode_envelope",
    "decode_payload_json",
    "make_signature",
    "sign_envelope",
    "add_signature",
]
