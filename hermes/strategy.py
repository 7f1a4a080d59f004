"""
Port ordering strategies.

A PortStrategy turns a PortSpec into the exact sequence of ports probed
on every host. It holds no per-host state: iterating it again replays
the same sequence, so one instance serves every host of a scan.
"""

import math
import random
from typing import Iterator, Optional

from .config import ScanOrder
from .utils import PortSpec


def _pick_coprime_step(total: int, rng: random.Random) -> int:
    """
    Picks a step in [1, total) with gcd(step, total) == 1.
    Walking x -> (x + step) % total from any start then visits every
    index exactly once before returning to the start.
    """
    if total <= 2:
        return 1
    while True:
        step = rng.randrange(1, total)
        if math.gcd(step, total) == 1:
            return step


class PortStrategy:
    """
    Lazily yields the ports of a PortSpec in serial or randomized order.

    Randomized order is a full-cycle additive walk over the sorted port
    list, with start index and step drawn from random.Random(seed). When
    the spec carries no seed, one is drawn once here so that every host
    of the scan sees the same permutation.
    """

    def __init__(self, spec: PortSpec, seed: Optional[int] = None):
        self.spec = spec
        self.order = spec.order
        if seed is None:
            seed = spec.seed
        if seed is None and self.order is ScanOrder.RANDOM:
            seed = random.SystemRandom().randrange(2 ** 32)
        self.seed = seed

        self._ports = spec.ports
        self._start = 0
        self._step = 1
        if self.order is ScanOrder.RANDOM:
            rng = random.Random(self.seed)
            self._step = _pick_coprime_step(len(self._ports), rng)
            self._start = rng.randrange(len(self._ports))

    def __len__(self) -> int:
        return len(self._ports)

    def __iter__(self) -> Iterator[int]:
        if self.order is ScanOrder.SERIAL:
            yield from self._ports
            return

        total = len(self._ports)
        index = self._start
        for _ in range(total):
            yield self._ports[index]
            index = (index + self._step) % total

    def __repr__(self):
        return f"PortStrategy(order={self.order.value}, ports={len(self)}, seed={self.seed})"


def generate(spec: PortSpec, seed: Optional[int] = None) -> PortStrategy:
    """Builds the restartable port sequence for a spec."""
    return PortStrategy(spec, seed)
