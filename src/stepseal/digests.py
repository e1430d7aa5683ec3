"""Digest sets and hashing helpers.

A digest set maps an algorithm identifier to a lowercase hex digest, e.g.
``{"sha256": "ab12..."}``. Linking compares digest sets on exact
``(algorithm, hex)`` pairs; algorithm names are normalized so that
``SHA-256`` and ``sha256`` compare equal.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Iterable, Mapping

DEFAULT_ALGORITHM = "sha256"

# Canonical names for algorithm spellings seen in attestations
_ALGORITHM_ALIASES = {
    "sha-1": "sha1",
    "sha-224": "sha224",
    "sha-256": "sha256",
    "sha-384": "sha384",
    "sha-512": "sha512",
}


def normalize_algorithm(name: str) -> str:
    """Lowercase an algorithm name and collapse dashed spellings."""
    key = name.strip().lower()
    return _ALGORITHM_ALIASES.get(key, key)


def normalize_digests(digests: Mapping[str, Any]) -> dict[str, str]:
    """Return a digest set with canonical algorithm names and lowercase hex.

    Raises:
        ValueError: If an entry is not a string.
    """
    out: dict[str, str] = {}
    for alg, value in digests.items():
        if not isinstance(alg, str) or not isinstance(value, str):
            raise ValueError(f"digest entry must be string→string, got {alg!r}: {value!r}")
        out[normalize_algorithm(alg)] = value.strip().lower()
    return out


def digest_pairs(digests: Mapping[str, str]) -> frozenset[tuple[str, str]]:
    """The set of ``(algorithm, hex)`` pairs of a digest set."""
    return frozenset(normalize_digests(digests).items())


def digests_match(a: Mapping[str, str], b: Mapping[str, str]) -> bool:
    """True if the sets share an algorithm and agree on every shared one.

    Sets with no algorithm in common never match, so a material recorded
    only with sha1 is not linked to a product recorded only with sha256.
    """
    left = normalize_digests(a)
    right = normalize_digests(b)
    common = set(left) & set(right)
    if not common:
        return False
    return all(left[alg] == right[alg] for alg in common)


def parse_digest_ref(ref: str) -> dict[str, str]:
    """Parse ``"sha256:abcd"`` into ``{"sha256": "abcd"}``."""
    if ":" not in ref:
        raise ValueError(f"digest reference must look like 'alg:hex', got {ref!r}")
    alg, value = ref.split(":", 1)
    if not alg or not value:
        raise ValueError(f"digest reference must look like 'alg:hex', got {ref!r}")
    return normalize_digests({alg: value})


def format_digests(digests: Mapping[str, str]) -> str:
    """Render a digest set as ``alg:hex`` joined by commas, sorted."""
    return ",".join(f"{alg}:{value}" for alg, value in sorted(normalize_digests(digests).items()))


def hash_bytes(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Hex digest of bytes."""
    return hashlib.new(normalize_algorithm(algorithm), data).hexdigest()


def hash_file(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Hex digest of file contents, read in chunks.

    Raises:
        FileNotFoundError: If file doesn't exist.
    """
    h = hashlib.new(normalize_algorithm(algorithm))
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def digest_file(path: Path, algorithms: Iterable[str] = (DEFAULT_ALGORITHM,)) -> dict[str, str]:
    """Digest set of a file for each requested algorithm."""
    return {normalize_algorithm(alg): hash_file(path, alg) for alg in algorithms}


__all__ = [
    "DEFAULT_ALGORITHM",
    "normalize_algorithm",
    "normalize_digests",
    "digest_pairs",
    "digests_match",
    "parse_digest_ref",
    "format_digests",
    "hash_bytes",
    "hash_file",
    "digest_file",
]
