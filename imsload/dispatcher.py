"""Weighted scenario selection over a stable cumulative-weight table."""

from __future__ import annotations

import random
from bisect import bisect_left
from collections.abc import Sequence

from .exceptions import ImsLoadConfigError
from .models import ScenarioKind, ScenarioWeight


class ScenarioDispatcher:
    """Draws one scenario per iteration.

    The table keeps declaration order for the whole run; ties resolve to the
    earlier entry. Weights need not sum to 1: the draw in [0, 1) is scaled by
    the total. If every weight is zero the last scenario is always returned.
    """

    __slots__ = ("_kinds", "_cumulative", "_total")

    def __init__(self, weights: Sequence[ScenarioWeight]) -> None:
        if not weights:
            raise ImsLoadConfigError("scenario weight table is empty")
        self._kinds = tuple(w.scenario for w in weights)
        cumulative: list[float] = []
        acc = 0.0
        for w in weights:
            if w.weight < 0:
                raise ImsLoadConfigError(f"negative weight for {w.scenario.value}")
            acc += w.weight
            cumulative.append(acc)
        self._cumulative = tuple(cumulative)
        self._total = acc

    @property
    def scenarios(self) -> tuple[ScenarioKind, ...]:
        return self._kinds

    def probability(self, kind: ScenarioKind) -> float:
        """Expected selection frequency: w / sum(w)."""
        if self._total <= 0:
            return 1.0 if kind == self._kinds[-1] else 0.0
        return sum(
            c - (self._cumulative[i - 1] if i else 0.0)
            for i, (k, c) in enumerate(zip(self._kinds, self._cumulative))
            if k == kind
        ) / self._total

    def select(self, draw: float) -> ScenarioKind:
        """First scenario whose cumulative weight >= draw * total."""
        if self._total <= 0:
            return self._kinds[-1]
        target = draw * self._total
        i = bisect_left(self._cumulative, target)
        if i >= len(self._kinds):
            return self._kinds[-1]
        # Skip zero-weight entries sitting exactly on the boundary (only reachable at draw == 0).
        while self._cumulative[i] == (self._cumulative[i - 1] if i else 0.0) and i + 1 < len(self._kinds):
            i += 1
        return self._kinds[i]

    def next(self, rng: random.Random) -> ScenarioKind:
        return self.select(rng.random())
