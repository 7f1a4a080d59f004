"""
Single-attempt socket probes.

A probe performs exactly one attempt against host:port and classifies
it. Retrying, timing budgets across attempts and aggregation belong to
the scheduler.
"""

import asyncio
import errno
from dataclasses import dataclass
from typing import Optional

from .config import Protocol
from .payloads import udp_payload
from .results import Outcome

# Descriptor exhaustion: the batch size is too large for this process
EXHAUSTION_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE})


@dataclass(frozen=True)
class ProbeResult:
    outcome: Outcome
    reason: str = ""
    errno: Optional[int] = None

    @property
    def exhausted(self) -> bool:
        return self.errno in EXHAUSTION_ERRNOS


def _describe(e: OSError) -> str:
    if e.errno in EXHAUSTION_ERRNOS:
        return "too many open files"
    if e.strerror:
        return e.strerror.lower()
    return str(e) or type(e).__name__


class TcpConnectProbe:
    """
    Full TCP connect.
    Handshake completes -> OPEN, RST -> CLOSED, silence -> FILTERED,
    anything else (unreachable network, reset, ...) -> ERROR.
    """
    protocol = Protocol.TCP

    async def attempt(self, host: str, port: int, timeout: float) -> ProbeResult:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            return ProbeResult(Outcome.FILTERED, "timed out")
        except ConnectionRefusedError:
            return ProbeResult(Outcome.CLOSED, "connection refused")
        except TimeoutError:
            # Kernel-level ETIMEDOUT before our own deadline
            return ProbeResult(Outcome.FILTERED, "timed out")
        except OSError as e:
            return ProbeResult(Outcome.ERROR, _describe(e), e.errno)

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeResult(Outcome.OPEN, "connected")


class _UdpProbeProtocol(asyncio.DatagramProtocol):
    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.answer = loop.create_future()

    def datagram_received(self, data, addr):
        if not self.answer.done():
            self.answer.set_result(data)

    def error_received(self, exc):
        # ICMP errors on a connected UDP socket surface here
        if not self.answer.done():
            self.answer.set_exception(exc)

    def connection_lost(self, exc):
        if exc is not None and not self.answer.done():
            self.answer.set_exception(exc)


class UdpProbe:
    """
    Sends a service-appropriate datagram and waits for a reply.
    Reply -> OPEN, ICMP port unreachable -> CLOSED, silence -> OPEN_FILTERED.
    """
    protocol = Protocol.UDP

    async def attempt(self, host: str, port: int, timeout: float) -> ProbeResult:
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: _UdpProbeProtocol(loop),
                remote_addr=(host, port)
            )
        except OSError as e:
            return ProbeResult(Outcome.ERROR, _describe(e), e.errno)

        try:
            transport.sendto(udp_payload(port))
            try:
                await asyncio.wait_for(protocol.answer, timeout=timeout)
            except asyncio.TimeoutError:
                return ProbeResult(Outcome.OPEN_FILTERED, "no response")
            except ConnectionRefusedError:
                return ProbeResult(Outcome.CLOSED, "port unreachable")
            except OSError as e:
                return ProbeResult(Outcome.ERROR, _describe(e), e.errno)
            return ProbeResult(Outcome.OPEN, "response received")
        finally:
            transport.close()


def probe_for(protocol) -> object:
    """Default probe for a protocol."""
    if Protocol(protocol) is Protocol.UDP:
        return UdpProbe()
    return TcpConnectProbe()
