"""Tests for signature verification on both trust paths."""
from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID

from conftest import NOW, Forge, KeylessCA, issue
from stepseal.cryptoutil import key_id
from stepseal.envelope import INTOTO_PAYLOAD_TYPE, pae, sign_envelope
from stepseal.errors import BadSignature, MissingTimestamp, UnknownKey, UntrustedChain
from stepseal.signature import IdentityKind, SignatureVerifier, establish_identity, verify_signature
from stepseal.trust import TrustStore


def _flip(data: bytes, index: int) -> bytes:
    return data[:index] + bytes([data[index] ^ 0x01]) + data[index + 1:]


class TestPublicKeyPath:
    """Signatures checked against a named long-lived key."""

    def test_valid_signature(self, forge):
        envelope = forge.collection("build")
        identity = verify_signature(envelope.pae(), envelope.signatures[0], forge.trust_store())

        assert identity.kind is IdentityKind.PUBLIC_KEY
        assert identity.key_id == "K1"
        assert identity.leaf_certificate is None

    def test_every_payload_byte_flip_fails(self, forge):
        """Flipping any single payload byte breaks the signature."""
        envelope = forge.collection("build")
        signature = envelope.signatures[0]
        trust = forge.trust_store()
        verifier = SignatureVerifier(NOW)

        for i in range(len(envelope.payload)):
            message = pae(envelope.payload_type, _flip(envelope.payload, i))
            with pytest.raises(BadSignature):
                verifier.verify(message, signature, trust)

    def test_every_signature_byte_flip_fails(self, forge):
        envelope = forge.collection("build")
        signature = envelope.signatures[0]
        trust = forge.trust_store()

        for i in range(len(signature.signature_bytes)):
            tampered = replace(signature, signature_bytes=_flip(signature.signature_bytes, i))
            with pytest.raises(BadSignature):
                verify_signature(envelope.pae(), tampered, trust)

    def test_unknown_key(self, forge, k1_key):
        envelope = forge.collection("build", key=k1_key, key_id="K9")
        with pytest.raises(UnknownKey) as exc:
            verify_signature(envelope.pae(), envelope.signatures[0], forge.trust_store())
        assert exc.value.detail == "K9"

    def test_right_id_wrong_key(self, forge, k1_key):
        """A signature claiming K1 but made with another key."""
        envelope = forge.collection("build", key=k1_key, key_id="K1")
        with pytest.raises(BadSignature):
            verify_signature(envelope.pae(), envelope.signatures[0], forge.trust_store())

    @pytest.mark.parametrize("make_key", [
        lambda: ec.generate_private_key(ec.SECP256R1()),
        lambda: ec.generate_private_key(ec.SECP384R1()),
        lambda: rsa.generate_private_key(public_exponent=65537, key_size=2048),
    ], ids=["p256", "p384", "rsa"])
    def test_other_algorithms(self, make_key):
        private_key = make_key()
        envelope = sign_envelope(b'{"x":1}', INTOTO_PAYLOAD_TYPE, private_key)
        trust = TrustStore.from_keys([private_key.public_key()])

        identity = verify_signature(envelope.pae(), envelope.signatures[0], trust)
        assert identity.key_id == key_id(private_key.public_key())


class TestKeylessPath:
    """Signatures made with a short-lived certificate key."""

    def test_valid_chain(self, forge):
        envelope = forge.keyless_collection("build")
        identity = verify_signature(envelope.pae(), envelope.signatures[0], forge.trust_store(), at_time=NOW)

        assert identity.kind is IdentityKind.KEYLESS
        assert identity.root_id == "fulcio"
        assert identity.cert_identity.emails == ("dev@example.com",)

    def test_expired_leaf_does_not_fail_chain(self, forge):
        """The leaf window is left to the timestamp check."""
        leaf = forge.ca.leaf(not_before=NOW - timedelta(days=30))
        envelope = forge.keyless_collection("build", leaf=leaf)
        identity = verify_signature(envelope.pae(), envelope.signatures[0], forge.trust_store(), at_time=NOW)
        assert identity.kind is IdentityKind.KEYLESS

    def test_tampered_payload(self, forge):
        envelope = forge.keyless_collection("build")
        message = pae(envelope.payload_type, _flip(envelope.payload, 10))
        with pytest.raises(BadSignature):
            verify_signature(message, envelope.signatures[0], forge.trust_store(), at_time=NOW)

    def test_foreign_ca(self, forge):
        other = KeylessCA.create("other")
        leaf = other.leaf()
        envelope = forge.keyless_collection("build", leaf=leaf)
        envelope = replace(envelope, signatures=(replace(envelope.signatures[0], intermediates=(other.intermediate.pem,)),))

        with pytest.raises(UntrustedChain):
            verify_signature(envelope.pae(), envelope.signatures[0], forge.trust_store(), at_time=NOW)

    def test_expired_intermediate(self, forge):
        """An intermediate past notAfter breaks the chain even if the root is fine."""
        ca = KeylessCA.create("fulcio", intermediate_not_after=NOW - timedelta(hours=1))
        forge.ca = ca
        envelope = forge.keyless_collection("build", leaf=ca.leaf(not_before=NOW - timedelta(days=2)))

        with pytest.raises(UntrustedChain, match="intermediate"):
            verify_signature(envelope.pae(), envelope.signatures[0], forge.trust_store(), at_time=NOW)

    def test_no_keyless_roots(self, forge):
        envelope = forge.keyless_collection("build")
        with pytest.raises(UntrustedChain, match="no keyless roots"):
            verify_signature(envelope.pae(), envelope.signatures[0], TrustStore(), at_time=NOW)

    def test_root_restriction(self, forge):
        envelope = forge.keyless_collection("build")
        verifier = SignatureVerifier(NOW)
        with pytest.raises(UntrustedChain):
            verifier.verify(envelope.pae(), envelope.signatures[0], forge.trust_store(), root_ids=["elsewhere"])


class TestCertificatePath:
    """Key usage and path constraints along the keyless chain."""

    @staticmethod
    def _verify(forge, ca, leaf):
        forge.ca = ca
        envelope = forge.keyless_collection("build", leaf=leaf)
        return verify_signature(envelope.pae(), envelope.signatures[0], forge.trust_store(), at_time=NOW)

    @staticmethod
    def _leaf(ca, eku=(ExtendedKeyUsageOID.CODE_SIGNING,)):
        return issue("sigstore", issuer=ca.intermediate, not_before=NOW - timedelta(minutes=5),
                     not_after=NOW + timedelta(minutes=5), emails=["dev@example.com"], eku=list(eku))

    def test_leaf_without_code_signing(self, forge):
        leaf = self._leaf(forge.ca, eku=(ExtendedKeyUsageOID.CLIENT_AUTH,))
        with pytest.raises(UntrustedChain, match="codeSigning"):
            self._verify(forge, forge.ca, leaf)

    def test_leaf_without_any_usage(self, forge):
        with pytest.raises(UntrustedChain, match="codeSigning"):
            self._verify(forge, forge.ca, self._leaf(forge.ca, eku=()))

    def test_intermediate_restricted_to_other_usage(self):
        root = issue("fulcio root", ca=True)
        intermediate = issue("fulcio intermediate", issuer=root, ca=True, eku=[ExtendedKeyUsageOID.TIME_STAMPING])
        ca = KeylessCA("fulcio", root, intermediate)

        with pytest.raises(UntrustedChain, match="may not issue codeSigning"):
            self._verify(Forge(ca=ca), ca, self._leaf(ca))

    def test_intermediate_without_cert_sign(self):
        root = issue("fulcio root", ca=True, key_cert_sign=True)
        intermediate = issue("fulcio intermediate", issuer=root, ca=True, key_cert_sign=False)
        ca = KeylessCA("fulcio", root, intermediate)

        with pytest.raises(UntrustedChain, match="may not sign certificates"):
            self._verify(Forge(ca=ca), ca, self._leaf(ca))

    def test_root_path_length_exceeded(self):
        root = issue("fulcio root", ca=True, path_length=0)
        intermediate = issue("fulcio intermediate", issuer=root, ca=True)
        ca = KeylessCA("fulcio", root, intermediate)

        with pytest.raises(UntrustedChain, match="allows 0 intermediates"):
            self._verify(Forge(ca=ca), ca, self._leaf(ca))

    def test_constraints_that_fit(self):
        root = issue("fulcio root", ca=True, path_length=1, key_cert_sign=True)
        intermediate = issue("fulcio intermediate", issuer=root, ca=True, path_length=0, key_cert_sign=True,
                             eku=[ExtendedKeyUsageOID.CODE_SIGNING])
        ca = KeylessCA("fulcio", root, intermediate)

        assert self._verify(Forge(ca=ca), ca, self._leaf(ca)).kind is IdentityKind.KEYLESS


class TestEstablishIdentity:
    """Signature plus timestamp requirements."""

    def test_keyless_gets_signed_time(self, forge):
        envelope = forge.keyless_collection("build")
        identity = establish_identity(envelope.pae(), envelope.signatures[0], forge.trust_store(), now=NOW)

        leaf = envelope.signatures[0].leaf_certificate()
        assert identity.signed_time == leaf.not_valid_before_utc + timedelta(minutes=1)

    def test_keyless_without_timestamp_rejected_by_default(self, forge):
        envelope = forge.keyless_collection("build", timestamped=False)
        with pytest.raises(MissingTimestamp):
            establish_identity(envelope.pae(), envelope.signatures[0], forge.trust_store(), now=NOW)

    def test_without_timestamp_needs_live_leaf(self, forge):
        envelope = forge.keyless_collection("build", timestamped=False)
        with pytest.raises(UntrustedChain, match="not valid now"):
            establish_identity(
                envelope.pae(), envelope.signatures[0], forge.trust_store(), require_timestamp=False, now=NOW
            )

    def test_without_timestamp_live_leaf_passes(self, forge):
        leaf = forge.ca.leaf(not_before=NOW - timedelta(minutes=2))
        envelope = forge.keyless_collection("build", leaf=leaf, timestamped=False)
        identity = establish_identity(
            envelope.pae(), envelope.signatures[0], forge.trust_store(), require_timestamp=False, now=NOW
        )
        assert identity.signed_time is None

    def test_public_key_needs_no_timestamp(self, forge):
        envelope = forge.collection("build")
        identity = establish_identity(envelope.pae(), envelope.signatures[0], forge.trust_store(), now=NOW)
        assert identity.kind is IdentityKind.PUBLIC_KEY
