"""
Tests for the scan scheduler, socket probes and the CLI.
Run with: pytest tests/ -v
"""
import asyncio
import io
import socket
import sys
from collections import Counter

import pytest
from rich.console import Console

from hermes.config import ScanConfig, ScanOrder
from hermes.errors import ConfigError, NoTargetsError, ResourceExhaustionWarning
from hermes.main import build_parser, main, port_spec_from_args
from hermes.probes import ProbeResult, TcpConnectProbe, UdpProbe, probe_for
from hermes.progress import ProgressReporter
from hermes.resolver import ResolvedHost
from hermes import scanner as scanner_module
from hermes.results import ERROR_SAMPLE_LIMIT, Outcome, Settlement
from hermes.scanner import ScanScheduler, scan
from hermes.strategy import PortStrategy
from hermes.ui import ScannerUI
from hermes.utils import PortSpec

# Large enough that the descriptor ceiling never clamps unless a test asks for it
ROOMY = 1_000_000


class FakeProbe:
    """Scripted probe: fixed outcome per (ip, port), tracks concurrency."""

    def __init__(self, outcomes=None, default=Outcome.CLOSED, delay=0.0):
        self.outcomes = outcomes or {}
        self.default = default
        self.delay = delay
        self.calls = Counter()
        self.order = []
        self.active = 0
        self.peak = 0

    async def attempt(self, host, port, timeout):
        self.calls[(host, port)] += 1
        self.order.append((host, port))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            outcome = self.outcomes.get((host, port), self.default)
            return ProbeResult(outcome, outcome.value)
        finally:
            self.active -= 1


class ExplodingProbe:
    async def attempt(self, host, port, timeout):
        raise RuntimeError("driver bug")


def config(**overrides):
    options = dict(batch_size=100, timeout=200, ulimit_override=ROOMY)
    options.update(overrides)
    return ScanConfig(**options)


def free_port(kind=socket.SOCK_STREAM):
    """A port that was free a moment ago; nothing listens on it."""
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestScheduler:
    """Work item production, retries and aggregation"""

    @pytest.mark.asyncio
    async def test_progress_event_per_item(self):
        """Exactly H x P progress events, then one final event"""
        hosts = ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        ports = [22, 80, 443, 8080, 9000]
        probe = FakeProbe({("10.0.0.2", 80): Outcome.OPEN, ("10.0.0.3", 9000): Outcome.FILTERED})
        reporter = ProgressReporter()
        events = []
        reporter.subscribe(events.append)

        result = await ScanScheduler(config(), probe=probe, reporter=reporter).scan(hosts, ports)

        progress = [e for e in events if not e.finished]
        assert len(progress) == 15
        assert [e.completed for e in progress] == list(range(1, 16))
        assert events[-1].finished
        assert reporter.snapshot().completed == 15
        assert reporter.snapshot().fraction_complete == 1.0
        assert result.completed == result.total == 15
        assert sum(result.counts.values()) == 15
        assert result.as_dict() == {"10.0.0.2": [80]}

    @pytest.mark.asyncio
    async def test_hosts_outer_ports_inner(self):
        """With a single slot, items are admitted host by host"""
        probe = FakeProbe()
        scheduler = ScanScheduler(config(batch_size=1), probe=probe)
        await scheduler.scan(["10.0.0.1", "10.0.0.2"], PortSpec((2, 1)))
        assert probe.order == [("10.0.0.1", 1), ("10.0.0.1", 2), ("10.0.0.2", 1), ("10.0.0.2", 2)]

    @pytest.mark.asyncio
    async def test_retry_bound_filtered(self):
        """Silence is retried exactly `tries` times"""
        probe = FakeProbe(default=Outcome.FILTERED)
        scheduler = ScanScheduler(config(tries=3), probe=probe)
        result = await scheduler.scan(["10.0.0.1"], [80, 81])
        assert probe.calls[("10.0.0.1", 80)] == 3
        assert probe.calls[("10.0.0.1", 81)] == 3
        assert scheduler.attempts == 6
        assert result.counts[Outcome.FILTERED] == 2

    @pytest.mark.asyncio
    async def test_retry_bound_error(self):
        """Persistent socket errors end as ERROR and are listed"""
        probe = FakeProbe(default=Outcome.ERROR)
        result = await ScanScheduler(config(tries=2), probe=probe).scan(["10.0.0.1"], [80])
        assert probe.calls[("10.0.0.1", 80)] == 2
        assert len(result.errors) == 1
        assert result.errors[0].attempts == 2
        assert result.counts[Outcome.CLOSED] == 0

    @pytest.mark.asyncio
    async def test_answers_are_not_retried(self):
        """OPEN and CLOSED settle on the first attempt"""
        probe = FakeProbe({("10.0.0.1", 80): Outcome.OPEN})
        await ScanScheduler(config(tries=5), probe=probe).scan(["10.0.0.1"], [80, 81])
        assert probe.calls[("10.0.0.1", 80)] == 1
        assert probe.calls[("10.0.0.1", 81)] == 1

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        """In-flight attempts never exceed the batch size"""
        probe = FakeProbe(delay=0.01)
        scheduler = ScanScheduler(config(batch_size=25), probe=probe)
        await scheduler.scan(["10.0.0.1", "10.0.0.2"], range(1, 101))
        assert probe.peak <= 25
        assert scheduler.peak_in_flight <= 25
        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    async def test_concurrency_cap_after_ulimit_clamp(self):
        """The clamped batch size is what bounds concurrency"""
        probe = FakeProbe(delay=0.01)
        scheduler = ScanScheduler(config(batch_size=50, ulimit_override=60), probe=probe)
        await scheduler.scan(["10.0.0.1"], range(1, 201))
        assert scheduler.advice.clamped
        assert scheduler.advice.batch_size == 30
        assert probe.peak <= 30
        assert scheduler.peak_in_flight <= 30

    @pytest.mark.asyncio
    async def test_exhaustion_warning(self):
        """A tiny descriptor ceiling warns but still scans"""
        probe = FakeProbe(delay=0.001)
        scheduler = ScanScheduler(config(batch_size=500, ulimit_override=12), probe=probe)
        with pytest.warns(ResourceExhaustionWarning):
            result = await scheduler.scan(["10.0.0.1"], range(1, 41))
        assert scheduler.advice.batch_size == 6
        assert probe.peak <= 6
        assert result.completed == 40

    @pytest.mark.asyncio
    async def test_ascending_results_under_random_order(self):
        """Open ports are reported ascending whatever the scan order"""
        open_ports = {("10.0.0.1", p): Outcome.OPEN for p in (9000, 22, 443, 3306)}
        probe = FakeProbe(open_ports)
        spec = PortSpec.from_range(1, 10000, ScanOrder.RANDOM, seed=99)
        result = await ScanScheduler(config(batch_size=500), probe=probe).scan(["10.0.0.1"], spec)
        assert result.ports_for("10.0.0.1") == [22, 443, 3306, 9000]
        # The probe really did see a non-ascending sequence
        seen = [port for _, port in probe.order]
        assert seen != sorted(seen)

    @pytest.mark.asyncio
    async def test_same_permutation_for_every_host(self):
        probe = FakeProbe()
        strategy = PortStrategy(PortSpec.from_range(1, 50, ScanOrder.RANDOM, seed=5))
        await ScanScheduler(config(batch_size=1), probe=probe).scan(["10.0.0.1", "10.0.0.2"], strategy)
        first = [p for h, p in probe.order if h == "10.0.0.1"]
        second = [p for h, p in probe.order if h == "10.0.0.2"]
        assert first == second == list(strategy)

    @pytest.mark.asyncio
    async def test_udp_ambiguity_kept_distinct(self):
        """open|filtered is neither open nor closed"""
        probe = FakeProbe({("10.0.0.1", 161): Outcome.OPEN, ("10.0.0.1", 53): Outcome.OPEN_FILTERED})
        result = await ScanScheduler(config(protocol="udp"), probe=probe).scan(["10.0.0.1"], [53, 161, 500])
        assert result.ports_for("10.0.0.1") == [161]
        assert result.ports_for("10.0.0.1", include_ambiguous=True) == [53, 161]
        assert result.counts[Outcome.OPEN_FILTERED] == 1
        assert result.counts[Outcome.CLOSED] == 1

    @pytest.mark.asyncio
    async def test_progress_totals_with_retries_and_mixed_outcomes(self):
        """One event per item even when items burn through every retry"""
        hosts = ["10.0.0.1", "10.0.0.2"]
        ports = [21, 22, 80, 443, 8080, 9000]
        outcomes = {}
        for host in hosts:
            outcomes[(host, 21)] = Outcome.FILTERED
            outcomes[(host, 22)] = Outcome.ERROR
            outcomes[(host, 80)] = Outcome.OPEN
        probe = FakeProbe(outcomes)
        reporter = ProgressReporter()
        events = []
        reporter.subscribe(events.append)

        result = await ScanScheduler(config(tries=3), probe=probe, reporter=reporter).scan(hosts, ports)

        progress = [e for e in events if not e.finished]
        assert len(progress) == 12
        assert [e.completed for e in progress] == list(range(1, 13))
        assert all(e.total == 12 for e in events)
        assert events[-1].finished
        assert events[-1].completed == 12
        assert probe.calls[("10.0.0.1", 21)] == 3
        assert probe.calls[("10.0.0.2", 22)] == 3
        assert result.counts[Outcome.FILTERED] == 2
        assert result.counts[Outcome.ERROR] == 2
        assert result.counts[Outcome.OPEN] == 2
        assert result.counts[Outcome.CLOSED] == 6

    @pytest.mark.asyncio
    async def test_error_retention_is_bounded(self):
        """A network-wide failure keeps a sample, not every settlement"""
        hosts = [f"10.1.{i // 250}.{i % 250 + 1}" for i in range(50)]
        probe = FakeProbe(default=Outcome.ERROR)
        result = await ScanScheduler(config(batch_size=500), probe=probe).scan(hosts, range(1, 41))
        assert result.counts[Outcome.ERROR] == 2000
        assert len(result.errors) == ERROR_SAMPLE_LIMIT
        assert result.errors_truncated == 2000 - ERROR_SAMPLE_LIMIT

    @pytest.mark.asyncio
    async def test_open_ports_announced_as_found(self):
        """on_open fires once per open socket, before the scan returns"""
        found = []
        probe = FakeProbe({("10.0.0.1", 22): Outcome.OPEN, ("10.0.0.2", 443): Outcome.OPEN,
                           ("10.0.0.2", 53): Outcome.OPEN_FILTERED})
        scheduler = ScanScheduler(config(), probe=probe, on_open=found.append)
        await scheduler.scan(["10.0.0.1", "10.0.0.2"], [22, 53, 443])
        assert sorted((s.host.ip, s.port) for s in found) == [("10.0.0.1", 22), ("10.0.0.2", 443)]
        assert all(isinstance(s, Settlement) and s.outcome is Outcome.OPEN for s in found)

    @pytest.mark.asyncio
    async def test_failing_open_callback_is_contained(self):
        def broken(settlement):
            raise RuntimeError("printer on fire")

        probe = FakeProbe({("10.0.0.1", 22): Outcome.OPEN})
        result = await ScanScheduler(config(), probe=probe, on_open=broken).scan(["10.0.0.1"], [22, 23])
        assert result.as_dict() == {"10.0.0.1": [22]}
        assert result.completed == 2

    @pytest.mark.asyncio
    async def test_advice_taken_once(self, monkeypatch):
        """Advising ahead of scan() pins the snapshot the scan uses"""
        reads = []

        def fake_detect():
            reads.append(1)
            return 60

        monkeypatch.setattr(scanner_module, "detect_ulimit", fake_detect)
        probe = FakeProbe(delay=0.001)
        scheduler = ScanScheduler(ScanConfig(batch_size=50, timeout=200), probe=probe)
        advice = scheduler.advise()
        await scheduler.scan(["10.0.0.1"], range(1, 101))
        assert len(reads) == 1
        assert scheduler.advice is advice
        assert probe.peak <= advice.batch_size == 30

        # A later scan takes a fresh snapshot
        await scheduler.scan(["10.0.0.1"], [1])
        assert len(reads) == 2

    @pytest.mark.asyncio
    async def test_probe_crash_is_an_error_outcome(self):
        result = await ScanScheduler(config(), probe=ExplodingProbe()).scan(["10.0.0.1"], [1, 2])
        assert result.completed == 2
        assert result.counts[Outcome.ERROR] == 2
        assert "driver bug" in result.errors[0].reason

    @pytest.mark.asyncio
    async def test_exclude_ports_from_config(self):
        probe = FakeProbe()
        result = await ScanScheduler(config(exclude_ports=[2]), probe=probe).scan(["10.0.0.1"], [1, 2, 3])
        assert result.total == 2
        assert ("10.0.0.1", 2) not in probe.calls

    @pytest.mark.asyncio
    async def test_everything_excluded(self):
        with pytest.raises(ConfigError):
            await ScanScheduler(config(exclude_ports=[1]), probe=FakeProbe()).scan(["10.0.0.1"], [1])

    @pytest.mark.asyncio
    async def test_no_hosts(self):
        with pytest.raises(NoTargetsError):
            await ScanScheduler(config(), probe=FakeProbe()).scan([], [80])

    def test_invalid_mapping_config(self):
        with pytest.raises(ConfigError):
            ScanScheduler({"batch_size": -1})

    def test_default_probes(self):
        assert isinstance(ScanScheduler(config()).probe, TcpConnectProbe)
        assert isinstance(ScanScheduler(config(protocol="udp")).probe, UdpProbe)
        assert isinstance(probe_for("udp"), UdpProbe)

    def test_blocking_run(self):
        probe = FakeProbe({("10.0.0.1", 80): Outcome.OPEN})
        result = ScanScheduler(config(), probe=probe).run([ResolvedHost.parse("10.0.0.1")], [80, 81])
        assert result.as_dict() == {"10.0.0.1": [80]}

    @pytest.mark.asyncio
    async def test_module_level_scan(self):
        probe = FakeProbe({("10.0.0.1", 80): Outcome.OPEN})
        result = await scan(["10.0.0.1"], [80], config={"ulimit_override": ROOMY}, probe=probe)
        assert result.open_count == 1


class TestCancellation:
    """Cancel stops admission and returns a partial result"""

    @pytest.mark.asyncio
    async def test_cancel_midway(self):
        probe = FakeProbe({("10.0.0.1", 1): Outcome.OPEN}, delay=0.05)
        reporter = ProgressReporter()
        scheduler = ScanScheduler(config(batch_size=2, timeout=100), probe=probe, reporter=reporter)
        asyncio.get_running_loop().call_later(0.12, scheduler.cancel)

        result = await asyncio.wait_for(scheduler.scan(["10.0.0.1"], range(1, 21)), timeout=5)

        assert result.cancelled
        assert 0 < result.completed < result.total
        assert sum(result.counts.values()) == result.completed
        assert result.as_dict() == {"10.0.0.1": [1]}
        assert reporter.snapshot().finished
        assert reporter.snapshot().completed == result.completed

    @pytest.mark.asyncio
    async def test_hung_attempts_are_abandoned(self):
        """In-flight work gets one timeout of grace, then is dropped"""
        probe = FakeProbe(delay=30)
        scheduler = ScanScheduler(config(batch_size=4, timeout=50), probe=probe)
        asyncio.get_running_loop().call_later(0.05, scheduler.cancel)

        result = await asyncio.wait_for(scheduler.scan(["10.0.0.1"], range(1, 11)), timeout=5)

        assert result.cancelled
        assert result.completed == 0
        assert probe.active == 0

    @pytest.mark.asyncio
    async def test_cancel_before_scan(self):
        probe = FakeProbe()
        scheduler = ScanScheduler(config(), probe=probe)
        scheduler.cancel()
        result = await scheduler.scan(["10.0.0.1"], [80, 81])
        assert result.cancelled
        assert result.completed == 0
        assert not probe.calls


    def test_scheduler_reusable_after_cancel(self):
        """A cancel is consumed by the scan that honours it"""
        probe = FakeProbe({("10.0.0.1", 80): Outcome.OPEN})
        scheduler = ScanScheduler(config(), probe=probe)
        scheduler.cancel()
        first = scheduler.run(["10.0.0.1"], [80, 81])
        assert first.cancelled
        assert not scheduler.cancelled

        second = scheduler.run(["10.0.0.1"], [80, 81])
        assert not second.cancelled
        assert second.completed == 2
        assert second.as_dict() == {"10.0.0.1": [80]}


class TestSocketProbes:
    """Probes against real loopback sockets"""

    @pytest.mark.asyncio
    async def test_tcp_open_and_closed(self):
        async def handle(reader, writer):
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        open_port = server.sockets[0].getsockname()[1]
        closed_port = free_port()
        try:
            probe = TcpConnectProbe()
            assert (await probe.attempt("127.0.0.1", open_port, 2.0)).outcome is Outcome.OPEN
            assert (await probe.attempt("127.0.0.1", closed_port, 2.0)).outcome is Outcome.CLOSED
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_end_to_end_scan(self):
        """One listener, two closed ports -> {ip: [port]}"""
        async def handle(reader, writer):
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        open_port = server.sockets[0].getsockname()[1]
        closed = [free_port(), free_port()]
        try:
            result = await ScanScheduler(config(batch_size=10, timeout=2000)).scan(
                ["127.0.0.1"], [open_port] + closed
            )
        finally:
            server.close()
            await server.wait_closed()

        assert result.as_dict() == {"127.0.0.1": [open_port]}
        assert result.counts[Outcome.CLOSED] == 2
        assert not result.cancelled

    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="relies on loopback ICMP delivery")
    @pytest.mark.asyncio
    async def test_udp_reply_and_unreachable(self):
        class Echo(asyncio.DatagramProtocol):
            def connection_made(self, transport):
                self.transport = transport

            def datagram_received(self, data, addr):
                self.transport.sendto(b"pong", addr)

        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(Echo, local_addr=("127.0.0.1", 0))
        open_port = transport.get_extra_info("sockname")[1]
        closed_port = free_port(socket.SOCK_DGRAM)
        try:
            probe = UdpProbe()
            assert (await probe.attempt("127.0.0.1", open_port, 2.0)).outcome is Outcome.OPEN
            assert (await probe.attempt("127.0.0.1", closed_port, 2.0)).outcome is Outcome.CLOSED
        finally:
            transport.close()


class TestCli:
    """Command line entry point"""

    def test_greppable_scan(self, capsys):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(16)
        open_port = listener.getsockname()[1]
        closed_port = free_port()
        try:
            code = main(["-a", "127.0.0.1", "-p", f"{open_port},{closed_port}",
                         "-g", "-t", "2000", "-b", "10"])
        finally:
            listener.close()

        assert code == 0
        assert f"127.0.0.1 -> [{open_port}]" in capsys.readouterr().out

    def test_bad_ports_exit_code(self):
        assert main(["-a", "127.0.0.1", "-p", "99999", "-g"]) == 1

    def test_bad_timeout_exit_code(self):
        assert main(["-a", "127.0.0.1", "-p", "80", "-t", "0", "-g"]) == 1

    def test_targets_required(self):
        with pytest.raises(SystemExit):
            main(["-p", "80"])

    def test_port_spec_from_args(self):
        parser = build_parser()
        assert len(port_spec_from_args(parser.parse_args(["-a", "x", "--top"]))) == 1000
        spec = port_spec_from_args(parser.parse_args(["-a", "x", "-r", "10-12", "--scan-order", "random"]))
        assert spec.ports == (10, 11, 12)
        assert spec.order is ScanOrder.RANDOM
        assert len(port_spec_from_args(parser.parse_args(["-a", "x"]))) == 65535


class TestScannerUI:

    def render(self, result, **kwargs):
        buffer = io.StringIO()
        ui = ScannerUI(output=Console(file=buffer, width=120, color_system=None), **kwargs)
        ui.display_results(result)
        return buffer.getvalue()

    def test_table_output(self):
        probe = FakeProbe({("10.0.0.1", 22): Outcome.OPEN, ("10.0.0.1", 80): Outcome.ERROR})
        result = ScanScheduler(config(), probe=probe).run(["10.0.0.1"], [22, 80, 443])
        output = self.render(result)
        assert "10.0.0.1" in output
        assert "22" in output
        assert "1 closed" in output
        assert "1 errored" in output

    def test_greppable_output(self):
        probe = FakeProbe({("10.0.0.2", 8080): Outcome.OPEN, ("10.0.0.2", 22): Outcome.OPEN})
        result = ScanScheduler(config(), probe=probe).run(["10.0.0.2"], [8080, 22, 1])
        assert self.render(result, greppable=True).strip() == "10.0.0.2 -> [22,8080]"

    def test_no_open_ports(self):
        result = ScanScheduler(config(), probe=FakeProbe()).run(["10.0.0.1"], [1])
        assert "No open TCP ports found" in self.render(result)

    def announce(self, **kwargs):
        buffer = io.StringIO()
        ui = ScannerUI(output=Console(file=buffer, width=120, color_system=None), **kwargs)
        probe = FakeProbe({("10.0.0.3", 443): Outcome.OPEN, ("10.0.0.3", 22): Outcome.OPEN})
        ScanScheduler(config(batch_size=1), probe=probe, on_open=ui.announce_open).run(["10.0.0.3"], [22, 80, 443])
        return buffer.getvalue()

    def test_open_ports_printed_live(self):
        """Each open socket gets its own line as it is found"""
        lines = self.announce().splitlines()
        assert lines == ["Open 10.0.0.3:22", "Open 10.0.0.3:443"]

    def test_open_ports_accessible(self):
        assert self.announce(accessible=True).splitlines() == ["Open 10.0.0.3:22", "Open 10.0.0.3:443"]

    def test_open_ports_silent_when_greppable(self):
        assert self.announce(greppable=True) == ""
