"""
Provenance linker.

Connects accepted steps by content digest:

    build.products ──(sha256 equal)──▶ package.materials

A non-root step (one whose policy rule names `artifactsFrom`) must have every
material it recorded produced by one of those upstream steps. A material that
appears in no upstream product is a break, and so is a non-root step that
recorded no materials at all: it cannot be tied to anything upstream.

The result does not depend on the order collections were supplied in: steps
are walked in policy order, candidates are sorted by a stable key and edges
are sorted before the graph is built.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from stepseal.attestation import Collection, Subject
from stepseal.digests import digests_match, format_digests
from stepseal.errors import BrokenChain, Reason, ReasonCode
from stepseal.policy import Policy, StepRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    """A product of `from_step` consumed as a material of `to_step`."""
    from_step: str
    to_step: str
    product: str
    material: str
    digest: str

    def to_dict(self) -> dict:
        return {
            "from": self.from_step,
            "to": self.to_step,
            "product": self.product,
            "material": self.material,
            "digest": self.digest,
        }


@dataclass(frozen=True)
class ProvenanceGraph:
    steps: tuple[str, ...]
    edges: tuple[Edge, ...]
    roots: tuple[str, ...] = ()

    def upstream_of(self, step: str) -> tuple[str, ...]:
        return tuple(sorted({e.from_step for e in self.edges if e.to_step == step}))

    def downstream_of(self, step: str) -> tuple[str, ...]:
        return tuple(sorted({e.to_step for e in self.edges if e.from_step == step}))

    def topological_order(self) -> tuple[str, ...]:
        """Steps ordered so every step follows the steps it consumes from."""
        remaining = list(self.steps)
        done: list[str] = []
        while remaining:
            ready = [s for s in remaining if all(u in done for u in self.upstream_of(s))]
            if not ready:
                # Edges come from an acyclic policy; reaching here means a bug upstream
                raise ValueError("provenance graph has a cycle")
            for step in ready:
                done.append(step)
                remaining.remove(step)
        return tuple(done)

    def to_dict(self) -> dict:
        return {
            "steps": list(self.steps),
            "roots": list(self.roots),
            "edges": [e.to_dict() for e in self.edges],
        }


def _candidate_key(collection: Collection) -> tuple:
    return (
        collection.step_name,
        tuple(sorted((s.name, format_digests(s.digests)) for s in collection.materials())),
        tuple(sorted((s.name, format_digests(s.digests)) for s in collection.products())),
    )


def _upstream_products(
    rule: StepRule,
    accepted: Mapping[str, Sequence[Collection]],
) -> list[tuple[str, Subject]]:
    products = []
    for upstream in rule.artifacts_from:
        for collection in sorted(accepted.get(upstream, ()), key=_candidate_key):
            products.extend((upstream, p) for p in collection.products())
    return products


def _link_collection(
    rule: StepRule,
    collection: Collection,
    products: list[tuple[str, Subject]],
) -> tuple[list[Edge], list[Reason]]:
    edges: list[Edge] = []
    breaks: list[Reason] = []
    materials = collection.materials()
    if not materials:
        breaks.append(Reason(
            ReasonCode.BROKEN_CHAIN,
            f"no materials recorded; expected artifacts from {', '.join(rule.artifacts_from)}",
            step=rule.name,
        ))
        return edges, breaks

    for material in materials:
        found = [
            Edge(
                from_step=upstream,
                to_step=rule.name,
                product=product.name,
                material=material.name,
                digest=format_digests(material.digests),
            )
            for upstream, product in products
            if digests_match(product.digests, material.digests)
        ]
        if not found:
            breaks.append(Reason(
                ReasonCode.BROKEN_CHAIN,
                f"material {material.name} ({format_digests(material.digests)}) "
                f"not produced by {', '.join(rule.artifacts_from)}",
                step=rule.name,
            ))
        edges.extend(found)
    return edges, breaks


def link(
    policy: Policy,
    accepted: Mapping[str, Sequence[Collection]],
) -> ProvenanceGraph:
    """Link the accepted collections of every policy step.

    Args:
        policy: Supplies step order, root steps and artifactsFrom.
        accepted: Step name to the collections accepted for it. A step links
            when any one of its accepted collections links.

    Raises:
        BrokenChain: With one Reason per unmatched material of each broken step.
    """
    all_edges: list[Edge] = []
    all_breaks: list[Reason] = []
    roots = []

    for rule in policy.steps:
        if rule.is_root:
            roots.append(rule.name)
            continue
        products = _upstream_products(rule, accepted)
        first_breaks: Optional[list[Reason]] = None
        for collection in sorted(accepted.get(rule.name, ()), key=_candidate_key):
            edges, breaks = _link_collection(rule, collection, products)
            if not breaks:
                all_edges.extend(edges)
                first_breaks = None
                break
            if first_breaks is None:
                first_breaks = breaks
        else:
            if first_breaks is None:
                first_breaks = [Reason(ReasonCode.BROKEN_CHAIN, "no accepted collection to link", step=rule.name)]
        if first_breaks:
            all_breaks.extend(first_breaks)

    if all_breaks:
        logger.info("provenance linking failed with %d break(s)", len(all_breaks))
        raise BrokenChain("; ".join(str(b) for b in all_breaks), breaks=tuple(all_breaks))

    edges = tuple(sorted(set(all_edges), key=lambda e: (e.from_step, e.to_step, e.material, e.product, e.digest)))
    return ProvenanceGraph(steps=policy.step_names, edges=edges, roots=tuple(roots))


__all__ = ["Edge", "ProvenanceGraph", "link"]
