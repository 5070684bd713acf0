"""Seeded RNG used for procedural branch selection."""
from __future__ import annotations

from random import Random
from typing import Sequence, TypeVar

T_co = TypeVar("T_co")


class RNG:
    """Wrapper around random.Random so procedural picks replay from a seed."""

    def __init__(self, seed: int) -> None:
        self._seed = seed
        self._random = Random(seed)

    @property
    def seed(self) -> int:
        return self._seed

    def choice(self, seq: Sequence[T_co]) -> T_co:
        """Return a random element from the non-empty sequence."""
        if not seq:
            raise ValueError("Cannot choose from an empty sequence.")
        return self._random.choice(seq)

    def weighted_choice(self, seq: Sequence[T_co], weights: Sequence[float]) -> T_co:
        """Return one element of ``seq`` with probability proportional to ``weights``.

        Non-positive weights never win. When every weight is non-positive the
        pick falls back to a uniform choice.
        """
        if not seq:
            raise ValueError("Cannot choose from an empty sequence.")
        if len(seq) != len(weights):
            raise ValueError("Sequence and weights must have the same length.")
        positive = [max(float(weight), 0.0) for weight in weights]
        total = sum(positive)
        if total <= 0:
            return self.choice(seq)
        threshold = self._random.random() * total
        running = 0.0
        for item, weight in zip(seq, positive):
            running += weight
            if threshold < running and weight > 0:
                return item
        # Float rounding can leave threshold == total; the last positive entry wins.
        for item, weight in zip(reversed(seq), reversed(positive)):
            if weight > 0:
                return item
        raise AssertionError("unreachable")
