"""Pytest configuration and fixtures for stepseal tests.

Everything cryptographic is minted in-process: Ed25519/ECDSA keys, a
root → intermediate CA for keyless signing, short-lived leaf certificates
and an RFC 3161 timestamp authority built with asn1crypto.
"""
from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence

import pytest
from asn1crypto import cms, tsp
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from stepseal.attestation import AttestationKind, build_statement
from stepseal.cryptoutil import PrivateKey, PublicKey, public_key_pem
from stepseal.envelope import INTOTO_PAYLOAD_TYPE, POLICY_PAYLOAD_TYPE, Envelope, TimestampToken, sign_envelope
from stepseal.trust import TrustRoot, TrustStore

NOW = datetime.now(timezone.utc).replace(microsecond=0)
FAR_FUTURE = "2099-01-01T00:00:00Z"

_ALIASES = {k.value for k in AttestationKind if k is not AttestationKind.OTHER}


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def sha(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


# ─────────────────────────────────────────────────────────────────
# PKI
# ─────────────────────────────────────────────────────────────────

@dataclass
class Issued:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    @property
    def pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)


def issue(
    common_name: str,
    *,
    issuer: Optional[Issued] = None,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    ca: bool = False,
    organization: Optional[str] = None,
    emails: Sequence[str] = (),
    uris: Sequence[str] = (),
    dns_names: Sequence[str] = (),
    eku: Optional[list] = None,
    path_length: Optional[int] = None,
    key_cert_sign: Optional[bool] = None,
) -> Issued:
    key = ec.generate_private_key(ec.SECP256R1())
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if organization:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    subject = x509.Name(attrs)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.cert.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or NOW - timedelta(days=365))
        .not_valid_after(not_after or NOW + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=path_length if ca else None), critical=True)
    )
    sans: list[x509.GeneralName] = [x509.RFC822Name(e) for e in emails]
    sans += [x509.UniformResourceIdentifier(u) for u in uris]
    sans += [x509.DNSName(d) for d in dns_names]
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    if eku:
        builder = builder.add_extension(x509.ExtendedKeyUsage(eku), critical=True)
    if key_cert_sign is not None:
        builder = builder.add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=False, data_encipherment=False,
            key_agreement=False, key_cert_sign=key_cert_sign, crl_sign=key_cert_sign,
            encipher_only=False, decipher_only=False,
        ), critical=True)
    cert = builder.sign(issuer.key if issuer else key, hashes.SHA256())
    return Issued(cert=cert, key=key)


@dataclass
class KeylessCA:
    """Root plus one intermediate, like a Fulcio deployment."""
    name: str
    root: Issued
    intermediate: Issued

    @classmethod
    def create(cls, name: str = "fulcio", intermediate_not_after: Optional[datetime] = None) -> "KeylessCA":
        root = issue(f"{name} root", ca=True, organization=name)
        intermediate = issue(f"{name} intermediate", issuer=root, ca=True, organization=name,
                             not_after=intermediate_not_after)
        return cls(name=name, root=root, intermediate=intermediate)

    def leaf(
        self,
        *,
        email: Optional[str] = "dev@example.com",
        uris: Sequence[str] = (),
        common_name: str = "sigstore",
        organization: Optional[str] = None,
        not_before: Optional[datetime] = None,
        lifetime: timedelta = timedelta(minutes=10),
    ) -> Issued:
        start = not_before or NOW - timedelta(days=1)
        return issue(
            common_name,
            issuer=self.intermediate,
            not_before=start,
            not_after=start + lifetime,
            organization=organization,
            emails=[email] if email else [],
            uris=uris,
            eku=[ExtendedKeyUsageOID.CODE_SIGNING],
        )

    def trust_root(self) -> TrustRoot:
        return TrustRoot(self.name, self.root.cert, (self.intermediate.cert,))

    def policy_entry(self) -> dict:
        return {"certificate": b64(self.root.pem), "intermediates": [b64(self.intermediate.pem)]}


class TimestampAuthority:
    """Mints RFC 3161 tokens over signature bytes."""

    def __init__(self, name: str = "tsa", issued: Optional[Issued] = None):
        self.name = name
        self.issued = issued or issue(f"{name} timestamping", eku=[ExtendedKeyUsageOID.TIME_STAMPING])
        self._serial = 0

    def token(
        self,
        signature: bytes,
        gen_time: datetime,
        *,
        imprint: Optional[bytes] = None,
        digest_algorithm: str = "sha256",
        signature_algorithm: str = "sha256_ecdsa",
    ) -> bytes:
        self._serial += 1
        tst_info = tsp.TSTInfo({
            "version": 1,
            "policy": "1.3.6.1.4.1.57264.2",
            "message_imprint": {
                "hash_algorithm": {"algorithm": "sha256"},
                "hashed_message": imprint if imprint is not None else hashlib.sha256(signature).digest(),
            },
            "serial_number": self._serial,
            "gen_time": gen_time,
        })
        tst_der = tst_info.dump()

        signed_attrs = cms.CMSAttributes([
            cms.CMSAttribute({"type": "content_type", "values": ["tst_info"]}),
            cms.CMSAttribute({"type": "message_digest", "values": [hashlib.sha256(tst_der).digest()]}),
        ])
        attr_signature = self.issued.key.sign(signed_attrs.dump(), ec.ECDSA(hashes.SHA256()))

        cert = asn1_x509.Certificate.load(self.issued.cert.public_bytes(serialization.Encoding.DER))
        signer_info = cms.SignerInfo({
            "version": "v1",
            "sid": cms.SignerIdentifier(
                name="issuer_and_serial_number",
                value=cms.IssuerAndSerialNumber({"issuer": cert.issuer, "serial_number": cert.serial_number}),
            ),
            "digest_algorithm": {"algorithm": digest_algorithm},
            "signed_attrs": signed_attrs,
            "signature_algorithm": {"algorithm": signature_algorithm},
            "signature": attr_signature,
        })
        signed_data = cms.SignedData({
            "version": "v3",
            "digest_algorithms": [{"algorithm": "sha256"}],
            "encap_content_info": {"content_type": "tst_info", "content": cms.ParsableOctetString(tst_der)},
            "certificates": [cms.CertificateChoices(name="certificate", value=cert)],
            "signer_infos": [signer_info],
        })
        return cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()

    def stamper(self, gen_time: datetime, *, issuer: Optional[str] = "", **token_options: Any):
        """A Timestamper for sign_envelope; `issuer=None` leaves the token unnamed."""
        issuer_id = self.name if issuer == "" else issuer

        def stamp(signature: bytes) -> TimestampToken:
            return TimestampToken(self.token(signature, gen_time, **token_options), issuer_root_id=issuer_id)

        return stamp

    def trust_root(self) -> TrustRoot:
        return TrustRoot(self.name, self.issued.cert)

    def policy_entry(self) -> dict:
        return {"certificate": b64(self.issued.pem), "intermediates": []}


# ─────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────

def _attestation(kind: str, step: str, materials: Mapping[str, str], products: Mapping[str, str]) -> dict:
    uri = AttestationKind(kind).uri if kind in _ALIASES else kind
    if kind == "material":
        predicate: Any = {name: {"sha256": digest} for name, digest in materials.items()}
    elif kind == "product":
        predicate = {
            name: {"mime_type": "application/octet-stream", "digest": {"sha256": digest}}
            for name, digest in products.items()
        }
    elif kind == "command-run":
        predicate = {"cmd": ["make", step], "exitcode": 0}
    else:
        predicate = {}
    return {"type": uri, "attestation": predicate}


@dataclass
class Forge:
    """Builds keys, policies and signed collections for one test."""
    k1: ed25519.Ed25519PrivateKey = field(default_factory=ed25519.Ed25519PrivateKey.generate)
    policy_signer: ed25519.Ed25519PrivateKey = field(default_factory=ed25519.Ed25519PrivateKey.generate)
    ca: KeylessCA = field(default_factory=KeylessCA.create)
    tsa: TimestampAuthority = field(default_factory=TimestampAuthority)
    now: datetime = NOW

    @property
    def pinned(self) -> TrustStore:
        """Out-of-band trust for the policy signer."""
        return TrustStore.from_keys([self.policy_signer.public_key()])

    def trust_store(self) -> TrustStore:
        """The trust a policy built by `policy()` carries."""
        return TrustStore(
            public_keys={"K1": self.k1.public_key()},
            keyless_roots={self.ca.name: self.ca.trust_root()},
            timestamp_roots={self.tsa.name: self.tsa.trust_root()},
        )

    # statements and collections

    def statement(
        self,
        step: str,
        types: Iterable[str] = ("material", "command-run", "product"),
        *,
        materials: Optional[Mapping[str, str]] = None,
        products: Optional[Mapping[str, str]] = None,
    ) -> bytes:
        materials = materials if materials is not None else {"src.tar": sha(f"{step}-src")}
        products = products if products is not None else {f"{step}.out": sha(f"{step}-out")}
        attestations = [_attestation(t, step, materials, products) for t in types]
        subjects = [{"name": n, "digest": {"sha256": d}} for n, d in products.items()]
        return build_statement(step, attestations, subjects)

    def collection(
        self,
        step: str,
        types: Iterable[str] = ("material", "command-run", "product"),
        *,
        key: Optional[PrivateKey] = None,
        key_id: str = "K1",
        materials: Optional[Mapping[str, str]] = None,
        products: Optional[Mapping[str, str]] = None,
    ) -> Envelope:
        payload = self.statement(step, types, materials=materials, products=products)
        return sign_envelope(payload, INTOTO_PAYLOAD_TYPE, key or self.k1, key_id=key_id)

    def keyless_collection(
        self,
        step: str,
        types: Iterable[str] = ("material", "command-run", "product"),
        *,
        leaf: Optional[Issued] = None,
        gen_time: Optional[datetime] = None,
        timestamped: bool = True,
        token_options: Optional[Mapping[str, Any]] = None,
        materials: Optional[Mapping[str, str]] = None,
        products: Optional[Mapping[str, str]] = None,
    ) -> Envelope:
        leaf = leaf or self.ca.leaf()
        payload = self.statement(step, types, materials=materials, products=products)
        stamp_at = gen_time or leaf.cert.not_valid_before_utc + timedelta(minutes=1)
        return sign_envelope(
            payload,
            INTOTO_PAYLOAD_TYPE,
            leaf.key,
            certificate=leaf.pem,
            intermediates=[self.ca.intermediate.pem],
            timestampers=[self.tsa.stamper(stamp_at, **(token_options or {}))] if timestamped else [],
            key_id="",
        )

    # policies

    @staticmethod
    def key_functionary(key_id: str = "K1") -> dict:
        return {"type": "publickey", "publickeyid": key_id}

    @staticmethod
    def keyless_functionary(roots: Sequence[str] = ("fulcio",), **constraints: Any) -> dict:
        cert_constraint = {"commonname": "", "dnsnames": [], "emails": [], "organizations": [], "uris": []}
        cert_constraint.update(constraints)
        cert_constraint["roots"] = list(roots)
        return {"type": "root", "certConstraints": cert_constraint}

    def step(
        self,
        name: str,
        types: Iterable[str] = ("material", "command-run", "product"),
        *,
        functionaries: Optional[list[dict]] = None,
        artifacts_from: Sequence[str] = (),
    ) -> dict:
        return {
            "name": name,
            "attestations": [{"type": t} for t in types],
            "functionaries": functionaries if functionaries is not None else [self.key_functionary()],
            "artifactsFrom": list(artifacts_from),
        }

    def policy(
        self,
        steps: Sequence[dict],
        *,
        expires: str = FAR_FUTURE,
        public_keys: Optional[Mapping[str, PublicKey]] = None,
    ) -> dict:
        keys = public_keys if public_keys is not None else {"K1": self.k1.public_key()}
        return {
            "expires": expires,
            "steps": {s["name"]: s for s in steps},
            "publickeys": {kid: {"keyid": kid, "key": b64(public_key_pem(k))} for kid, k in keys.items()},
            "roots": {self.ca.name: self.ca.policy_entry()},
            "timestampauthorities": {self.tsa.name: self.tsa.policy_entry()},
        }

    def sign_policy(self, document: dict, key: Optional[PrivateKey] = None) -> Envelope:
        payload = json.dumps(document, indent=2).encode("utf-8")
        return sign_envelope(payload, POLICY_PAYLOAD_TYPE, key or self.policy_signer)


@pytest.fixture
def forge() -> Forge:
    return Forge()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def k1_key() -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def keyless_ca() -> KeylessCA:
    return KeylessCA.create("fulcio")


@pytest.fixture
def tsa() -> TimestampAuthority:
    return TimestampAuthority("tsa")


@pytest.fixture
def two_step_chain(forge):
    """build → package, package consumes build's product."""
    built = sha("app-binary")
    policy = forge.policy([
        forge.step("build"),
        forge.step("package", artifacts_from=["build"]),
    ])
    build = forge.collection("build", products={"app": built})
    package = forge.collection("package", materials={"app": built}, products={"app.tar": sha("app-tar")})
    return policy, build, package
