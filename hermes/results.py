"""
Per-attempt outcomes and the aggregated scan result.

The accumulator is the only state shared between concurrently settling
work items; it is append-only and guarded by a lock. Finalizing it yields
an immutable ScanResult whose per-host port lists are always ascending,
whatever order the ports were scanned in.
"""

import asyncio
from collections import Counter, defaultdict
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set, Tuple

from .resolver import ResolvedHost, sort_hosts

# Terminal errors kept as Settlements; the rest are only counted
ERROR_SAMPLE_LIMIT = 1000


class Outcome(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    FILTERED = "filtered"            # no answer before the timeout
    OPEN_FILTERED = "open|filtered"  # UDP silence: open or dropped, can't tell
    ERROR = "error"

    @property
    def retryable(self) -> bool:
        return self in (Outcome.FILTERED, Outcome.OPEN_FILTERED, Outcome.ERROR)


@dataclass(frozen=True)
class Settlement:
    """Terminal state of one work item."""
    host: ResolvedHost
    port: int
    protocol: str
    outcome: Outcome
    attempts: int
    reason: str = ""


@dataclass(frozen=True)
class ScanResult:
    """Read-only snapshot handed to reporting and follow-up tooling."""
    open_ports: Mapping[ResolvedHost, Tuple[int, ...]]
    ambiguous: Mapping[ResolvedHost, Tuple[int, ...]]
    errors: Tuple[Settlement, ...]
    counts: Mapping[Outcome, int]
    completed: int
    total: int
    duration: float = 0.0
    cancelled: bool = False
    errors_truncated: int = 0  # ERROR settlements counted but not kept

    def ports_for(self, host, include_ambiguous: bool = False) -> List[int]:
        if isinstance(host, str):
            host = ResolvedHost.parse(host)
        ports = set(self.open_ports.get(host, ()))
        if include_ambiguous:
            ports.update(self.ambiguous.get(host, ()))
        return sorted(ports)

    def hosts(self) -> List[ResolvedHost]:
        return sort_hosts(set(self.open_ports) | set(self.ambiguous))

    def as_dict(self, include_ambiguous: bool = False) -> Dict[str, List[int]]:
        """{ip: [ports]} for hosts with at least one open port."""
        result = {}
        for host in self.hosts():
            ports = self.ports_for(host, include_ambiguous)
            if ports:
                result[host.ip] = ports
        return result

    @property
    def open_count(self) -> int:
        return sum(len(p) for p in self.open_ports.values())


class ResultAccumulator:
    """Collects settlements for one scan. Append-only until finalize()."""

    def __init__(self, total: int, error_limit: int = ERROR_SAMPLE_LIMIT):
        self.total = total
        self.error_limit = error_limit
        self._lock = asyncio.Lock()
        self._open: Dict[ResolvedHost, Set[int]] = defaultdict(set)
        self._ambiguous: Dict[ResolvedHost, Set[int]] = defaultdict(set)
        self._errors: List[Settlement] = []
        self._counts: Counter = Counter()
        self._completed = 0
        self._final: Optional[ScanResult] = None

    @property
    def completed(self) -> int:
        return self._completed

    async def record(self, settlement: Settlement) -> int:
        """Stores a settlement and returns the new completed count."""
        async with self._lock:
            if self._final is not None:
                raise RuntimeError("Scan result already finalized")
            if settlement.outcome is Outcome.OPEN:
                self._open[settlement.host].add(settlement.port)
            elif settlement.outcome is Outcome.OPEN_FILTERED:
                self._ambiguous[settlement.host].add(settlement.port)
            elif settlement.outcome is Outcome.ERROR and len(self._errors) < self.error_limit:
                self._errors.append(settlement)
            self._counts[settlement.outcome] += 1
            self._completed += 1
            return self._completed

    def finalize(self, duration: float = 0.0, cancelled: bool = False) -> ScanResult:
        if self._final is None:
            self._final = ScanResult(
                open_ports=_freeze(self._open),
                ambiguous=_freeze(self._ambiguous),
                errors=tuple(sorted(self._errors, key=lambda s: (s.host.version, int(s.host.address), s.port))),
                counts=MappingProxyType({o: self._counts.get(o, 0) for o in Outcome}),
                completed=self._completed,
                total=self.total,
                duration=duration,
                cancelled=cancelled,
                errors_truncated=self._counts[Outcome.ERROR] - len(self._errors),
            )
        return self._final


def _freeze(ports_by_host: Dict[ResolvedHost, Set[int]]) -> Mapping[ResolvedHost, Tuple[int, ...]]:
    return MappingProxyType({
        host: tuple(sorted(ports))
        for host, ports in ports_by_host.items()
        if ports
    })
