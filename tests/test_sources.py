"""Tests for envelope sources and upstream collection."""
from __future__ import annotations

import json
import logging

from conftest import sha
from stepseal.sources import DirectorySource, MemorySource, collect_envelopes, read_envelope_files


def _chain(forge):
    """source → build → package, each consuming the previous product."""
    source = forge.collection("source", materials={}, products={"src.tar": sha("src")})
    build = forge.collection("build", materials={"src.tar": sha("src")}, products={"app": sha("app")})
    package = forge.collection("package", materials={"app": sha("app")}, products={"app.tar": sha("app-tar")})
    return source, build, package


class TestMemorySource:
    def test_search_by_product(self, forge):
        source, build, package = _chain(forge)
        store = MemorySource([source, build, package])

        assert store.search({"sha256": sha("app")}) == [build]
        assert store.search({"SHA-256": sha("app-tar").upper()}) == [package]
        assert store.search({"sha256": sha("nothing")}) == []

    def test_materials_are_not_subjects(self, forge):
        _, build, _ = _chain(forge)
        assert MemorySource([build]).search({"sha256": sha("src")}) == []

    def test_non_collection_envelopes_never_match(self, forge):
        store = MemorySource()
        store.add(forge.sign_policy(forge.policy([forge.step("build")])))
        assert store.search({"sha256": sha("app")}) == []


class TestCollectEnvelopes:
    def test_walks_materials_upstream(self, forge):
        source, build, package = _chain(forge)
        unrelated = forge.collection("lint", products={"report": sha("report")})
        store = MemorySource([unrelated, package, source, build])

        found = collect_envelopes(store, {"sha256": sha("app-tar")})
        assert found == [package, build, source]

    def test_each_envelope_once(self, forge):
        source, build, package = _chain(forge)
        store = MemorySource([source, build, package, package])

        found = collect_envelopes(store, {"sha256": sha("app-tar")})
        assert len(found) == 3

    def test_depth_limit(self, forge, caplog):
        source, build, package = _chain(forge)
        store = MemorySource([source, build, package])

        with caplog.at_level(logging.WARNING, logger="stepseal.sources"):
            found = collect_envelopes(store, {"sha256": sha("app-tar")}, max_depth=1)
        assert found == [package]
        assert "depth 1" in caplog.text

    def test_unknown_artifact(self, forge):
        assert collect_envelopes(MemorySource(list(_chain(forge))), {"sha256": sha("x")}) == []


class TestDirectorySource:
    def test_loads_and_skips_junk(self, forge, tmp_path, caplog):
        source, build, package = _chain(forge)
        (tmp_path / "nested").mkdir()
        (tmp_path / "a.json").write_bytes(source.encode())
        (tmp_path / "nested" / "b.json").write_bytes(build.encode())
        (tmp_path / "c.json").write_bytes(package.encode())
        (tmp_path / "junk.json").write_text("{]")
        (tmp_path / "notes.txt").write_text("ignored")

        store = DirectorySource(tmp_path)
        with caplog.at_level(logging.WARNING, logger="stepseal.sources"):
            loaded = store.load()

        assert len(loaded) == 3
        assert "junk.json" in caplog.text
        assert collect_envelopes(store, {"sha256": sha("app-tar")}) == [package, build, source]


class TestReadEnvelopeFiles:
    def test_single_and_array_files(self, forge, tmp_path):
        source, build, package = _chain(forge)
        (tmp_path / "one.json").write_bytes(source.encode())
        (tmp_path / "many.json").write_text(json.dumps([json.loads(build.encode()), json.loads(package.encode())]))

        entries = read_envelope_files([tmp_path / "one.json", tmp_path / "many.json"])

        assert [name for name, _ in entries] == ["one.json", "many.json[0]", "many.json[1]"]
        assert entries[0][1] == source.encode()

    def test_unparseable_array_kept_whole(self, tmp_path):
        (tmp_path / "bad.json").write_text("[1, 2")
        assert read_envelope_files([tmp_path / "bad.json"]) == [("bad.json", b"[1, 2")]
