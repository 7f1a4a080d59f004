import asyncio
import logging
import threading
import time
import warnings
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Mapping, Optional, Set, Union

from .config import ScanConfig, load_config
from .errors import ConfigError, NoTargetsError, ResourceExhaustionWarning
from .probes import ProbeResult, probe_for
from .progress import ProgressEvent, ProgressReporter
from .resolver import Resolution, ResolvedHost
from .results import Outcome, ResultAccumulator, ScanResult, Settlement
from .strategy import PortStrategy
from .ulimit import UlimitAdvice, UlimitAdvisor, detect_ulimit
from .utils import PortSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkItem:
    host: ResolvedHost
    port: int
    protocol: str


class ScanScheduler:
    """
    Scans the cross product of hosts x ports under a concurrency cap.

    Work items are produced lazily (hosts outer, ports inner) and admitted
    through a semaphore sized to the effective batch size. A slot frees the
    moment its item settles, so one slow host never holds up a whole batch.
    """

    def __init__(self, config: Union[ScanConfig, Mapping, None] = None, probe=None,
                 reporter: Optional[ProgressReporter] = None,
                 advisor: Optional[UlimitAdvisor] = None,
                 on_open: Optional[Callable[[Settlement], None]] = None):
        if config is None:
            config = ScanConfig()
        elif not isinstance(config, ScanConfig):
            config = load_config(**config)
        self.config = config
        self.probe = probe or probe_for(config.protocol)
        self.reporter = reporter
        self.advisor = advisor or UlimitAdvisor()
        self.on_open = on_open
        self.advice: Optional[UlimitAdvice] = None
        self._prepared: Optional[UlimitAdvice] = None

        self.in_flight = 0
        self.peak_in_flight = 0
        self.attempts = 0
        self._error_reasons: Set[str] = set()
        self._exhaustion_warned = False

        self._cancel_requested = threading.Event()
        self._cancel_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # --- batch sizing -------------------------------------------------

    def advise(self) -> UlimitAdvice:
        """
        Effective batch size for the next scan, computed from one ceiling
        snapshot. Callers may advise ahead of scan() to show the result;
        scan() then uses that same snapshot instead of taking another.
        """
        limit = self.config.ulimit_override or detect_ulimit()
        advice = self.advisor.advise(self.config.batch_size, limit)
        if advice.clamped:
            logger.info(
                "Batch size %d exceeds what the open file limit (%d) allows; using %d. "
                "Raise it with --ulimit to scan faster.",
                advice.requested, advice.limit, advice.batch_size
            )
        if advice.exhausted:
            warnings.warn(
                f"Open file limit {advice.limit} leaves a batch size of only "
                f"{advice.batch_size}; the scan will be slow",
                ResourceExhaustionWarning,
                stacklevel=2,
            )
        self.advice = self._prepared = advice
        return advice

    # --- work items ---------------------------------------------------

    def _strategy(self, ports) -> PortStrategy:
        if isinstance(ports, PortStrategy):
            return ports
        if isinstance(ports, PortSpec):
            return PortStrategy(ports)
        # Any other iterable of ports: its distinct values, ordered per config
        return PortStrategy(PortSpec(tuple(ports), self.config.scan_order, self.config.seed))

    def work_items(self, hosts: Iterable[ResolvedHost], strategy: PortStrategy) -> Iterator[WorkItem]:
        excluded = set(self.config.exclude_ports)
        protocol = self.config.protocol.value
        for host in hosts:
            for port in strategy:
                if port in excluded:
                    continue
                yield WorkItem(host, port, protocol)

    # --- cancellation -------------------------------------------------

    def cancel(self):
        """
        Stops admitting new work. Safe to call from any thread.
        In-flight items get one more timeout to finish before being abandoned.
        Applies to the running scan, or to the next one if none is running;
        once a scan has honoured it the scheduler can be reused.
        """
        self._cancel_requested.set()
        loop, event = self._loop, self._cancel_event
        if loop is not None and event is not None and not loop.is_closed():
            loop.call_soon_threadsafe(event.set)

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested.is_set()

    # --- scanning -----------------------------------------------------

    async def _attempt(self, item: WorkItem) -> ProbeResult:
        self.attempts += 1
        try:
            return await self.probe.attempt(item.host.ip, item.port, self.config.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Probe failed on %s:%d", item.host.ip, item.port, exc_info=True)
            return ProbeResult(Outcome.ERROR, f"{type(e).__name__}: {e}")

    async def _settle(self, item: WorkItem, accumulator: ResultAccumulator, started: float):
        result = None
        tries = 0
        # Retry Logic: silence and socket errors are retried, answers are final
        for tries in range(1, self.config.tries + 1):
            result = await self._attempt(item)
            if result.exhausted and not self._exhaustion_warned:
                self._exhaustion_warned = True
                logger.warning("Too many open files. Please reduce the batch size (e.g. -b %d).",
                               max(1, self.config.batch_size // 2))
            if not result.outcome.retryable or self._cancel_event.is_set():
                break

        if result.outcome is Outcome.ERROR and len(self._error_reasons) < 1000:
            self._error_reasons.add(result.reason)

        settlement = Settlement(item.host, item.port, item.protocol, result.outcome, tries, result.reason)
        completed = await accumulator.record(settlement)
        if settlement.outcome is Outcome.OPEN and self.on_open is not None:
            try:
                self.on_open(settlement)
            except Exception:
                logger.exception("Open port callback failed for %s:%d", item.host.ip, item.port)
        if self.reporter is not None:
            self.reporter.update(ProgressEvent(completed, accumulator.total, time.monotonic() - started))

    async def scan(self, hosts, ports) -> ScanResult:
        """
        Scans every host on every port and returns the finalized result.

        `hosts` is a Resolution or an iterable of ResolvedHost / IP strings,
        `ports` a PortStrategy, PortSpec or plain iterable of ports.
        """
        if isinstance(hosts, Resolution):
            hosts = hosts.hosts
        hosts = [h if isinstance(h, ResolvedHost) else ResolvedHost.parse(h) for h in hosts]
        if not hosts:
            raise NoTargetsError()

        strategy = self._strategy(ports)
        excluded = set(self.config.exclude_ports)
        port_count = sum(1 for p in strategy if p not in excluded)
        if port_count == 0:
            raise ConfigError("Every port was excluded; nothing left to scan")
        total = len(hosts) * port_count

        if self._prepared is None:
            self.advise()
        batch_size = self._prepared.batch_size
        self._prepared = None

        self._loop = asyncio.get_running_loop()
        self._cancel_event = asyncio.Event()
        if self._cancel_requested.is_set():
            self._cancel_event.set()

        logger.debug(
            "Start scanning. Batch size %d, %d hosts, %d ports, %d targets altogether",
            batch_size, len(hosts), port_count, total
        )

        accumulator = ResultAccumulator(total)
        gate = asyncio.Semaphore(batch_size)
        tasks: Set[asyncio.Task] = set()
        drained = asyncio.Event()
        producer_done = False
        started = time.monotonic()

        def on_done(task: asyncio.Task):
            tasks.discard(task)
            self.in_flight -= 1
            gate.release()
            if producer_done and not tasks:
                drained.set()

        async def producer():
            nonlocal producer_done
            try:
                for item in self.work_items(hosts, strategy):
                    await gate.acquire()
                    if self._cancel_event.is_set():
                        gate.release()
                        break
                    self.in_flight += 1
                    self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                    task = asyncio.create_task(self._settle(item, accumulator, started))
                    tasks.add(task)
                    task.add_done_callback(on_done)
            finally:
                producer_done = True
                if not tasks:
                    drained.set()

        producer_task = asyncio.create_task(producer())
        finished = asyncio.create_task(drained.wait())
        interrupted = asyncio.create_task(self._cancel_event.wait())
        try:
            await asyncio.wait({finished, interrupted}, return_when=asyncio.FIRST_COMPLETED)

            if not finished.done():
                producer_task.cancel()
                await asyncio.gather(producer_task, return_exceptions=True)
                if tasks:
                    logger.debug("Cancelled; waiting for %d in-flight attempts", len(tasks))
                    _, pending = await asyncio.wait(set(tasks), timeout=self.config.timeout_seconds)
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
            elif producer_task.done() and producer_task.exception() is not None:
                for task in list(tasks):
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise producer_task.exception()
        finally:
            for waiter in (finished, interrupted):
                waiter.cancel()
            if not producer_task.done():
                producer_task.cancel()
            self._loop = None
            self._cancel_requested.clear()

        duration = time.monotonic() - started
        cancelled = self._cancel_event.is_set() and accumulator.completed < total
        result = accumulator.finalize(duration=duration, cancelled=cancelled)

        if self._error_reasons:
            logger.debug("Typical socket connection errors %s", sorted(self._error_reasons))
        logger.debug("Scan finished in %.2fs: %d/%d settled, %d open",
                     duration, result.completed, total, result.open_count)

        if self.reporter is not None:
            self.reporter.finish(ProgressEvent(result.completed, total, duration, finished=True))
        return result

    def run(self, hosts, ports) -> ScanResult:
        """Blocking wrapper around scan() for callers without an event loop."""
        return asyncio.run(self.scan(hosts, ports))


async def scan(hosts, ports, config: Union[ScanConfig, Mapping, None] = None,
               reporter: Optional[ProgressReporter] = None, probe=None) -> ScanResult:
    """Scans hosts x ports with a fresh scheduler."""
    scheduler = ScanScheduler(config, probe=probe, reporter=reporter)
    return await scheduler.scan(hosts, ports)
