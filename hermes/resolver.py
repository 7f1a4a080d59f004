"""
Target resolution.

Expands raw target tokens (literal IPs, CIDR blocks, hostnames and files
of such tokens) into a deduplicated, ordered list of concrete addresses.
Only tokens that are neither literals nor networks ever reach DNS, and
the DNS handle itself is built on first need.
"""

import ipaddress
import logging
import os
import socket
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Union

import dns.exception
import dns.resolver

from .errors import ConfigError, NoTargetsError, ResolutionError

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class ResolvedHost:
    """A concrete address, plus the hostname it came from (display only)."""
    address: IPAddress
    hostname: Optional[str] = field(default=None, compare=False)

    @classmethod
    def parse(cls, text: str, hostname: Optional[str] = None) -> "ResolvedHost":
        return cls(ipaddress.ip_address(text), hostname)

    @property
    def ip(self) -> str:
        return str(self.address)

    @property
    def version(self) -> int:
        return self.address.version

    def __str__(self):
        if self.hostname:
            return f"{self.address} ({self.hostname})"
        return str(self.address)


@dataclass
class Resolution:
    """Outcome of a resolve() call: hosts in first-seen order, plus per-token errors."""
    hosts: List[ResolvedHost]
    errors: List[ResolutionError]

    def __iter__(self):
        # Allows `hosts, errors = resolver.resolve(...)`
        return iter((self.hosts, self.errors))


class SystemResolver:
    """
    DNS lookups through the operating system (getaddrinfo).
    Addresses come back in resolver order with duplicates removed.
    """

    def __init__(self, family: int = socket.AF_UNSPEC):
        self.family = family

    def lookup(self, hostname: str) -> List[str]:
        infos = socket.getaddrinfo(hostname, None, self.family, socket.SOCK_STREAM)
        seen = []
        for info in infos:
            address = info[4][0]
            # Strip IPv6 zone ids (fe80::1%eth0)
            address = address.split('%', 1)[0]
            if address not in seen:
                seen.append(address)
        return seen


class StaticResolver:
    """Resolves names from a fixed table. Unknown names fail like NXDOMAIN."""

    def __init__(self, table: Dict[str, Iterable[str]]):
        self.table = {name.lower(): list(addresses) for name, addresses in table.items()}
        self.lookups: List[str] = []

    def lookup(self, hostname: str) -> List[str]:
        self.lookups.append(hostname)
        try:
            return list(self.table[hostname.lower()])
        except KeyError:
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known") from None


class NameserverResolver:
    """
    DNS lookups against explicit nameservers, bypassing the system
    configuration. Asks for A and AAAA records; a name with neither
    fails like NXDOMAIN.
    """

    def __init__(self, nameservers: Iterable[str], timeout: float = 5.0):
        self.nameservers = [str(ns) for ns in nameservers]
        if not self.nameservers:
            raise ConfigError("No DNS resolver addresses given")
        self._resolver = dns.resolver.Resolver(configure=False)
        self._resolver.nameservers = list(self.nameservers)
        self._resolver.lifetime = timeout

    def lookup(self, hostname: str) -> List[str]:
        addresses: List[str] = []
        failure = None
        for rdtype in ("A", "AAAA"):
            try:
                answer = self._resolver.resolve(hostname, rdtype, search=False)
            except dns.resolver.NoAnswer:
                continue
            except dns.exception.DNSException as e:
                failure = e
                continue
            for record in answer:
                if record.address not in addresses:
                    addresses.append(record.address)
        if not addresses:
            reason = str(failure) if failure is not None else "Name or service not known"
            raise socket.gaierror(socket.EAI_NONAME, reason)
        return addresses


def parse_nameservers(option: str) -> List[str]:
    """
    Reads nameserver IPs from a file (one per line) or, failing that, from a
    comma separated list. Entries that are not IP addresses are skipped.
    """
    entries = None
    if os.path.isfile(option):
        try:
            with open(option, 'r', encoding='utf-8') as f:
                entries = f.read().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Could not read resolver file %s: %s", option, e)
    if entries is None:
        entries = option.split(',')

    nameservers = []
    for entry in entries:
        try:
            nameservers.append(str(ipaddress.ip_address(entry.strip())))
        except ValueError:
            continue
    if not nameservers:
        raise ConfigError(f"No valid DNS resolver addresses in {option!r}")
    return nameservers


def nameserver_factory(option: Optional[str]) -> Callable[[], object]:
    """DNS handle factory for a --resolver value; the system resolver when unset."""
    if not option:
        return SystemResolver
    return partial(NameserverResolver, parse_nameservers(option))


class AddressResolver:
    """
    Turns target tokens into ResolvedHosts.

    Token handling, in order:
    1. Literal IPv4/IPv6 address -> one host, no I/O.
    2. Anything containing '/' -> CIDR block, expanded in ascending order.
    3. Path to an existing file -> each non-blank, non-comment line is a token.
    4. Otherwise -> hostname, looked up through the DNS handle.

    The DNS handle comes from `resolver_factory` and is created at most
    once per resolve() call, only when a hostname is actually met.
    """

    def __init__(self, resolver_factory: Callable[[], object] = SystemResolver,
                 include_network_broadcast: bool = True):
        self.resolver_factory = resolver_factory
        self.include_network_broadcast = include_network_broadcast
        self._dns = None

    def resolve(self, tokens: Iterable[str], exclude: Iterable[str] = ()) -> Resolution:
        """
        Resolves every token. Bad tokens are recorded, not raised.
        Raises NoTargetsError if nothing at all resolves.
        """
        self._dns = None
        hosts: Dict[IPAddress, ResolvedHost] = {}
        errors: List[ResolutionError] = []

        for token in tokens:
            self._resolve_into(token, hosts, errors, allow_file=True)

        exclude = list(exclude)
        if exclude:
            excluded: Dict[IPAddress, ResolvedHost] = {}
            for token in exclude:
                self._resolve_into(token, excluded, errors, allow_file=True)
            for address in excluded:
                hosts.pop(address, None)
            logger.debug("Excluded %d addresses", len(excluded))

        if not hosts:
            raise NoTargetsError(errors)

        for error in errors:
            logger.info("Could not resolve %s", error)
        return Resolution(list(hosts.values()), errors)

    def expand(self, token: str) -> List[ResolvedHost]:
        """Resolves a single token, raising its ResolutionError on failure."""
        hosts: Dict[IPAddress, ResolvedHost] = {}
        errors: List[ResolutionError] = []
        self._resolve_into(token, hosts, errors, allow_file=True)
        if errors and not hosts:
            raise errors[0]
        return list(hosts.values())

    def _resolve_into(self, token: str, hosts: Dict[IPAddress, ResolvedHost],
                      errors: List[ResolutionError], allow_file: bool, label: Optional[str] = None):
        token = token.strip()
        label = label or token
        if not token:
            errors.append(ResolutionError(label, "empty target"))
            return

        # 1. Literal address
        literal = self._parse_literal(token)
        if literal is not None:
            hosts.setdefault(literal, ResolvedHost(literal))
            return

        # 2. CIDR block
        if '/' in token and not (allow_file and os.path.isfile(token)):
            try:
                network = ipaddress.ip_network(token, strict=False)
            except ValueError as e:
                errors.append(ResolutionError(label, f"malformed CIDR block ({e})"))
                return
            for address in self._expand_network(network):
                hosts.setdefault(address, ResolvedHost(address))
            return

        # 3. File of tokens
        if allow_file and os.path.isfile(token):
            self._read_file(token, hosts, errors)
            return

        # 4. Hostname
        try:
            addresses = self._lookup(token)
        except (OSError, UnicodeError) as e:
            errors.append(ResolutionError(label, f"DNS resolution failed ({e})"))
            return
        if not addresses:
            errors.append(ResolutionError(label, "DNS returned no addresses"))
            return
        for text in addresses:
            try:
                address = ipaddress.ip_address(text)
            except ValueError:
                errors.append(ResolutionError(label, f"resolver returned invalid address {text!r}"))
                continue
            hosts.setdefault(address, ResolvedHost(address, token))

    @staticmethod
    def _parse_literal(token: str) -> Optional[IPAddress]:
        # Tolerate [v6] brackets and zone ids
        candidate = token
        if candidate.startswith('[') and candidate.endswith(']'):
            candidate = candidate[1:-1]
        candidate = candidate.split('%', 1)[0]
        try:
            return ipaddress.ip_address(candidate)
        except ValueError:
            return None

    def _expand_network(self, network) -> Iterable[IPAddress]:
        if (not self.include_network_broadcast
                and network.version == 4 and network.prefixlen <= 30):
            return network.hosts()
        return iter(network)

    def _read_file(self, path: str, hosts: Dict[IPAddress, ResolvedHost],
                   errors: List[ResolutionError]):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                lines = f.readlines()
        except (OSError, UnicodeDecodeError) as e:
            errors.append(ResolutionError(path, f"could not read file ({e})"))
            return

        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            self._resolve_into(line, hosts, errors, allow_file=False,
                               label=f"{path}:{lineno}: {line}")

    def _lookup(self, hostname: str) -> List[str]:
        if self._dns is None:
            logger.debug("Creating DNS resolver for hostname targets")
            self._dns = self.resolver_factory()
        return self._dns.lookup(hostname)


def resolve(tokens: Iterable[str], resolver_factory: Callable[[], object] = SystemResolver,
            include_network_broadcast: bool = True, exclude: Iterable[str] = ()) -> Resolution:
    """Convenience wrapper around AddressResolver.resolve."""
    resolver = AddressResolver(resolver_factory, include_network_broadcast)
    return resolver.resolve(tokens, exclude=exclude)


def sort_hosts(hosts: Iterable[ResolvedHost]) -> List[ResolvedHost]:
    """IPv4 before IPv6, then ascending numeric order."""
    return sorted(hosts, key=lambda h: (h.version, int(h.address)))
