"""Tests for collection parsing."""
from __future__ import annotations

import json

import pytest

from conftest import sha
from stepseal.attestation import (
    AttestationKind,
    build_statement,
    collection_from_envelope,
    kind_of,
    parse_collection,
    resolve_type,
)
from stepseal.errors import MalformedEnvelope


class TestKinds:
    def test_known_uri(self):
        assert kind_of("https://witness.dev/attestations/product/v0.1") is AttestationKind.PRODUCT

    def test_unknown_uri_is_other(self):
        assert kind_of("https://example.com/fuzz/v1") is AttestationKind.OTHER

    def test_resolve_alias(self):
        assert resolve_type("material") == AttestationKind.MATERIAL.uri
        assert resolve_type("https://example.com/fuzz/v1") == "https://example.com/fuzz/v1"


class TestParseCollection:
    def test_materials_and_products(self, forge):
        collection = parse_collection(forge.statement(
            "build", materials={"b.c": sha("b"), "a.c": sha("a")}, products={"app": sha("app")}
        ))

        assert collection.step_name == "build"
        assert [m.name for m in collection.materials()] == ["a.c", "b.c"]
        assert [(p.name, dict(p.digests)) for p in collection.products()] == [("app", {"sha256": sha("app")})]
        assert [s.name for s in collection.statement_subjects] == ["app"]
        assert AttestationKind.COMMAND_RUN.uri in collection.types()

    def test_unknown_attestation_kept(self, forge):
        uri = "https://example.com/fuzz/v1"
        collection = parse_collection(forge.statement("build", ["product", uri]))

        other = [a for a in collection.attestations if a.type == uri][0]
        assert other.kind is AttestationKind.OTHER
        assert other.subjects == ()

    def test_explicit_subjects_override(self):
        payload = build_statement("scan", [{
            "type": "https://example.com/scan/v1",
            "attestation": {"findings": 0},
            "subjects": [{"name": "image", "digest": {"sha256": sha("image")}}],
        }])
        attestation = parse_collection(payload).attestations[0]
        assert attestation.subjects[0].name == "image"

    def test_v1_statement_type_accepted(self, forge):
        statement = json.loads(forge.statement("build"))
        statement["_type"] = "https://in-toto.io/Statement/v1"
        assert parse_collection(json.dumps(statement).encode()).step_name == "build"

    @pytest.mark.parametrize("mutate, match", [
        (lambda s: s.update(_type="https://example.com/Statement"), "statement type"),
        (lambda s: s.update(predicateType="https://slsa.dev/provenance/v1"), "collection"),
        (lambda s: s["predicate"].pop("name"), "step name"),
        (lambda s: s["predicate"]["attestations"][0].pop("type"), "type"),
        (lambda s: s["predicate"]["attestations"][0].update(attestation=["x"]), "material"),
        (lambda s: s["predicate"]["attestations"][2]["attestation"]["build.out"].pop("digest"), "digest"),
    ], ids=["statement-type", "predicate-type", "name", "att-type", "material-shape", "product-digest"])
    def test_malformed(self, forge, mutate, match):
        statement = json.loads(forge.statement("build"))
        mutate(statement)
        with pytest.raises(MalformedEnvelope, match=match):
            parse_collection(json.dumps(statement).encode())

    def test_non_string_digest(self, forge):
        statement = json.loads(forge.statement("build"))
        statement["predicate"]["attestations"][0]["attestation"]["src.tar"]["sha256"] = 7
        with pytest.raises(MalformedEnvelope):
            parse_collection(json.dumps(statement).encode())

    def test_policy_envelope_is_not_a_collection(self, forge):
        with pytest.raises(MalformedEnvelope, match="payload type"):
            collection_from_envelope(forge.sign_policy(forge.policy([forge.step("build")])))
