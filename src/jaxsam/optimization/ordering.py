# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Variable orderings for sequential elimination.

An `Ordering` is the sequence in which `GaussianFactorGraph` eliminates
variables. Any permutation gives the same solution; the choice only decides
how much fill-in (separator size) elimination creates, and therefore the
cost. Constructors:

    Ordering(keys)                      explicit sequence
    Ordering.from_strings(["l1", "x1"]) explicit, by name
    Ordering.natural(graph)             sorted keys
    Ordering.minimum_degree(graph)      greedy minimum degree heuristic
    Ordering.constrained_first(graph, keys)
                                        the given keys first (e.g. points
                                        before cameras in bundle adjustment,
                                        the Schur-complement order), the
                                        rest by minimum degree

`validate(graph)` enforces that an ordering is a permutation of exactly the
variables the graph references.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Sequence, Set

from loguru import logger

from jaxsam.core.errors import MissingVariableError, OrderingError
from jaxsam.core.types import Key, as_key


class Ordering:
    """Immutable elimination order over variable keys."""

    def __init__(self, keys: Iterable) -> None:
        self._keys: List[Key] = [as_key(k) for k in keys]
        self._position: Dict[Key, int] = {}
        for i, k in enumerate(self._keys):
            if k in self._position:
                raise OrderingError(f"Key {k} appears twice in ordering")
            self._position[k] = i

    @classmethod
    def from_strings(cls, names: Sequence[str]) -> "Ordering":
        return cls(Key.parse(n) for n in names)

    @classmethod
    def natural(cls, graph) -> "Ordering":
        return cls(graph.keys())

    @classmethod
    def minimum_degree(cls, graph, exclude: Iterable[Key] = ()) -> "Ordering":
        """
        Greedy minimum degree on the variable adjacency graph: repeatedly
        eliminate the variable with the fewest neighbours (ties broken by
        key order) and connect its neighbours into a clique.
        """
        excluded = set(exclude)
        adjacency = _adjacency(graph)
        for k in excluded:
            for n in adjacency.pop(k, set()):
                if n in adjacency:
                    adjacency[n].discard(k)

        order: List[Key] = []
        while adjacency:
            key = min(adjacency, key=lambda k: (len(adjacency[k]), k))
            neighbours = adjacency.pop(key)
            for n in neighbours:
                adjacency[n].discard(key)
                adjacency[n].update(neighbours - {n})
            order.append(key)
        logger.debug("Minimum degree ordering over {} variables", len(order))
        return cls(order)

    @classmethod
    def constrained_first(cls, graph, first: Iterable) -> "Ordering":
        first_keys = [as_key(k) for k in first]
        rest = cls.minimum_degree(graph, exclude=first_keys)
        return cls(list(first_keys) + list(rest))

    # --- access ---

    def __iter__(self) -> Iterator[Key]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __getitem__(self, i: int) -> Key:
        return self._keys[i]

    def __contains__(self, key) -> bool:
        return as_key(key) in self._position

    def index(self, key) -> int:
        key = as_key(key)
        try:
            return self._position[key]
        except KeyError:
            raise MissingVariableError(key, "not in ordering") from None

    def __eq__(self, other) -> bool:
        return isinstance(other, Ordering) and self._keys == other._keys

    def __repr__(self) -> str:
        return "Ordering(" + ", ".join(str(k) for k in self._keys) + ")"

    # --- validation ---

    def validate(self, graph) -> None:
        """
        Raise MissingVariableError if the graph references a key the
        ordering lacks, and OrderingError if the ordering holds keys the
        graph never references.
        """
        referenced: Set[Key] = set(graph.keys())
        for key in sorted(referenced):
            if key not in self._position:
                raise MissingVariableError(key, "referenced by the graph but not in ordering")
        extra = sorted(set(self._keys) - referenced)
        if extra:
            raise OrderingError(
                "Ordering contains keys not referenced by any factor: "
                + ", ".join(str(k) for k in extra)
            )


def _adjacency(graph) -> Dict[Key, Set[Key]]:
    adjacency: Dict[Key, Set[Key]] = {k: set() for k in graph.keys()}
    for f in graph:
        for k in f.keys:
            adjacency[k].update(set(f.keys) - {k})
    return adjacency
