"""
Envelope sources.

The engine never queries storage itself. A source answers one question:
which envelopes name this subject digest?

    search({"sha256": "..."}) -> [Envelope, ...]

collect_envelopes walks from the artifact upstream: it asks for envelopes
naming the artifact, then for envelopes naming each material those
envelopes recorded, until nothing new turns up.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Optional, Protocol, Union

from stepseal.attestation import collection_from_envelope
from stepseal.digests import digest_pairs
from stepseal.envelope import Envelope, decode_envelope
from stepseal.errors import MalformedEnvelope

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 32


class EnvelopeSource(Protocol):
    def search(self, subject_digest: Mapping[str, str]) -> list[Envelope]:
        ...


def _subject_pairs(envelope: Envelope) -> frozenset[tuple[str, str]]:
    """Every (algorithm, hex) pair an envelope names as subject or product."""
    try:
        collection = collection_from_envelope(envelope)
    except MalformedEnvelope:
        return frozenset()
    pairs: set[tuple[str, str]] = set()
    for subject in collection.statement_subjects + collection.products():
        pairs |= digest_pairs(subject.digests)
    return frozenset(pairs)


@dataclass
class MemorySource:
    """In-memory index of envelopes by subject digest."""
    envelopes: list[Envelope] = field(default_factory=list)

    def add(self, envelope: Envelope) -> None:
        self.envelopes.append(envelope)

    def search(self, subject_digest: Mapping[str, str]) -> list[Envelope]:
        wanted = digest_pairs(subject_digest)
        return [e for e in self.envelopes if wanted & _subject_pairs(e)]


class DirectorySource:
    """Envelopes stored as ``*.json`` files under a directory.

    Files that do not decode are logged and left out; they are reported by
    the orchestrator only when passed to it directly.
    """

    def __init__(self, root: Union[str, Path], pattern: str = "*.json"):
        self.root = Path(root)
        self.pattern = pattern
        self._cache: Optional[list[Envelope]] = None

    def load(self) -> list[Envelope]:
        if self._cache is None:
            envelopes = []
            for path in sorted(self.root.rglob(self.pattern)):
                try:
                    envelopes.append(decode_envelope(path.read_bytes()))
                except MalformedEnvelope as e:
                    logger.warning("skipping %s: %s", path, e.detail)
            self._cache = envelopes
        return list(self._cache)

    def search(self, subject_digest: Mapping[str, str]) -> list[Envelope]:
        return MemorySource(self.load()).search(subject_digest)


def read_envelope_files(paths: Iterable[Union[str, Path]]) -> list[tuple[str, bytes]]:
    """(name, raw bytes) for each path. A JSON array file yields one entry per element."""
    out = []
    for path in paths:
        path = Path(path)
        raw = path.read_bytes()
        stripped = raw.lstrip()
        if stripped.startswith(b"["):
            try:
                items = json.loads(raw)
            except (UnicodeDecodeError, json.JSONDecodeError):
                out.append((path.name, raw))
                continue
            for i, item in enumerate(items):
                out.append((f"{path.name}[{i}]", json.dumps(item, separators=(",", ":")).encode("utf-8")))
        else:
            out.append((path.name, raw))
    return out


def collect_envelopes(
    source: EnvelopeSource,
    artifact_digest: Mapping[str, str],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> list[Envelope]:
    """Gather the candidate envelopes for an artifact by following materials upstream."""
    found: list[Envelope] = []
    seen_envelopes: set[bytes] = set()
    seen_digests: set[frozenset] = set()
    frontier = [dict(artifact_digest)]

    for depth in range(max_depth):
        if not frontier:
            break
        next_frontier = []
        for digest in frontier:
            key = digest_pairs(digest)
            if key in seen_digests:
                continue
            seen_digests.add(key)
            for envelope in source.search(digest):
                ident = envelope.encode()
                if ident in seen_envelopes:
                    continue
                seen_envelopes.add(ident)
                found.append(envelope)
                try:
                    collection = collection_from_envelope(envelope)
                except MalformedEnvelope:
                    continue
                next_frontier.extend(dict(m.digests) for m in collection.materials())
        frontier = next_frontier
    else:
        if frontier:
            logger.warning("stopped collecting envelopes at depth %d", max_depth)

    logger.debug("collected %d envelope(s)", len(found))
    return found


__all__ = [
    "EnvelopeSource",
    "MemorySource",
    "DirectorySource",
    "read_envelope_files",
    "collect_envelopes",
]
