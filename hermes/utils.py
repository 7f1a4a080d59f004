from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from .config import HIGHEST_PORT, LOWEST_PORT, ScanOrder
from .errors import ConfigError
from .top_ports import TOP_1000_PORTS


def _to_port(token: str, context: str) -> int:
    try:
        port = int(token)
    except ValueError:
        raise ConfigError(f"Invalid port number '{token}'{context}") from None
    if not LOWEST_PORT <= port <= HIGHEST_PORT:
        raise ConfigError(f"Port {port}{context} must be between {LOWEST_PORT} and {HIGHEST_PORT}")
    return port


def parse_port_range(token: str) -> List[int]:
    """
    Parses an inclusive "start-end" range.
    Example: "1000-1003" -> [1000, 1001, 1002, 1003]
    """
    parts = token.split('-')
    if len(parts) != 2:
        raise ConfigError(f"Invalid range format '{token}'. Expected 'start-end', e.g. 1-1000")
    context = f" in range '{token}'"
    start = _to_port(parts[0].strip(), context)
    end = _to_port(parts[1].strip(), context)
    if start > end:
        raise ConfigError(f"Start port {start} is greater than end port {end} in range '{token}'")
    return list(range(start, end + 1))


def parse_ports(port_input: str) -> List[int]:
    """
    Parses a string of ports (spaces, commas, ranges) into a sorted list of integers.
    Example: "80 443 1000-1002" -> [80, 443, 1000, 1001, 1002]

    Unlike a forgiving parser, any malformed piece raises ConfigError so a
    typo never silently shrinks the scan.
    """
    ports = set()
    # Replace commas with spaces to handle both formats
    tokens = port_input.replace(',', ' ').split()

    for token in tokens:
        if '-' in token:
            ports.update(parse_port_range(token))
        else:
            ports.add(_to_port(token, ""))

    if not ports:
        raise ConfigError("No valid ports or ranges provided")
    return sorted(ports)


@dataclass(frozen=True)
class PortSpec:
    """
    A set of distinct ports plus the order they should be visited in.
    Ports are validated and deduplicated at construction.
    """
    ports: Tuple[int, ...]
    order: ScanOrder = ScanOrder.SERIAL
    seed: Optional[int] = field(default=None, compare=False)

    def __post_init__(self):
        unique = set()
        for port in self.ports:
            if isinstance(port, bool) or not isinstance(port, int):
                raise ConfigError(f"Port {port!r} is not an integer")
            if not LOWEST_PORT <= port <= HIGHEST_PORT:
                raise ConfigError(f"Port {port} must be between {LOWEST_PORT} and {HIGHEST_PORT}")
            unique.add(port)
        if not unique:
            raise ConfigError("Port specification is empty")
        object.__setattr__(self, 'ports', tuple(sorted(unique)))
        object.__setattr__(self, 'order', ScanOrder(self.order))

    def __len__(self) -> int:
        return len(self.ports)

    @classmethod
    def from_range(cls, start: int, end: int, order: ScanOrder = ScanOrder.SERIAL,
                   seed: Optional[int] = None) -> "PortSpec":
        if start > end:
            raise ConfigError(f"Start port {start} is greater than end port {end}")
        return cls(tuple(range(start, end + 1)), order, seed)

    @classmethod
    def parse(cls, text: str, order: ScanOrder = ScanOrder.SERIAL,
              seed: Optional[int] = None) -> "PortSpec":
        return cls(tuple(parse_ports(text)), order, seed)

    @classmethod
    def top(cls, order: ScanOrder = ScanOrder.SERIAL, seed: Optional[int] = None) -> "PortSpec":
        return cls(TOP_1000_PORTS, order, seed)

    def excluding(self, ports: Iterable[int]) -> "PortSpec":
        """Returns a copy without the given ports. Raises ConfigError if nothing is left."""
        drop = set(ports)
        remaining = tuple(p for p in self.ports if p not in drop)
        if not remaining:
            raise ConfigError("Every port was excluded; nothing left to scan")
        return PortSpec(remaining, self.order, self.seed)
