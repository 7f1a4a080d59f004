import argparse
import asyncio
import logging
import signal
import sys

from rich.logging import RichHandler

from .config import ScanOrder, load_config
from .errors import HermesError
from .progress import ProgressReporter
from .resolver import AddressResolver, nameserver_factory
from .scanner import ScanScheduler
from .strategy import PortStrategy
from .ui import ScannerUI, err_console
from .ulimit import raise_ulimit
from .utils import PortSpec, parse_port_range, parse_ports


def _split(values):
    """Flattens repeated, comma separated option values."""
    tokens = []
    for value in values or []:
        tokens.extend(t.strip() for t in value.split(',') if t.strip())
    return tokens


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hermes",
        description="Hermes - The Swift Port Scanner. Do not point it at fragile "
                    "infrastructure: it opens thousands of connections at once."
    )
    parser.add_argument("-a", "--addresses", action="append", metavar="TARGETS",
                        help="Comma separated IPs, CIDRs, hostnames or files of them")
    ports = parser.add_mutually_exclusive_group()
    ports.add_argument("-p", "--ports", help="Ports to scan (e.g. 80,443,1-1000)")
    ports.add_argument("-r", "--range", help="Inclusive port range (e.g. 1-1000)")
    ports.add_argument("--top", action="store_true", help="Scan the top 1000 ports")
    parser.add_argument("-b", "--batch-size", type=int, default=4500,
                        help="Concurrent connection attempts (Default: 4500)")
    parser.add_argument("-t", "--timeout", type=int, default=1500,
                        help="Per-attempt timeout in milliseconds (Default: 1500)")
    parser.add_argument("--tries", type=int, default=1,
                        help="Attempts per port before giving up (Default: 1)")
    parser.add_argument("-u", "--ulimit", type=int,
                        help="Raise the open file limit to this value before scanning")
    parser.add_argument("--scan-order", choices=[o.value for o in ScanOrder], default="serial",
                        help="Visit ports in ascending or randomized order")
    parser.add_argument("--seed", type=int, help="Seed for --scan-order random")
    parser.add_argument("--udp", action="store_true", help="UDP scan instead of TCP connect")
    parser.add_argument("-e", "--exclude-ports", action="append", metavar="PORTS",
                        help="Comma separated ports to skip")
    parser.add_argument("-x", "--exclude-addresses", action="append", metavar="TARGETS",
                        help="Comma separated IPs, CIDRs or hostnames to skip")
    parser.add_argument("--resolver", metavar="NAMESERVERS",
                        help="DNS servers to use: a file of IPs or a comma separated list")
    parser.add_argument("--no-network-broadcast", action="store_true",
                        help="Skip network and broadcast addresses of IPv4 CIDR blocks")
    parser.add_argument("-g", "--greppable", action="store_true",
                        help="Only print 'ip -> [ports]' lines")
    parser.add_argument("--accessible", action="store_true",
                        help="Plain output for screen readers")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More logging (-v info, -vv debug)")
    return parser


def configure_logging(verbosity: int):
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )
    logging.captureWarnings(True)


def port_spec_from_args(args) -> PortSpec:
    order = ScanOrder(args.scan_order)
    if args.top:
        spec = PortSpec.top(order, args.seed)
    elif args.ports:
        spec = PortSpec.parse(args.ports, order, args.seed)
    elif args.range:
        spec = PortSpec(tuple(parse_port_range(args.range)), order, args.seed)
    else:
        spec = PortSpec.from_range(1, 65535, order, args.seed)
    return spec


async def run_scan(scheduler: ScanScheduler, hosts, strategy):
    """Runs the scan with Ctrl-C mapped to a graceful cancel where the platform allows."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, scheduler.cancel)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        installed = False
    try:
        return await scheduler.scan(hosts, strategy)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def main(argv=None) -> int:
    # 1. CLI Argument Parsing
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if not args.addresses:
        parser.error("at least one target is required (-a)")

    ui = ScannerUI(greppable=args.greppable, accessible=args.accessible)
    ui.display_welcome()

    try:
        # 2. Lift the descriptor ceiling first so the advisor sees the real limit
        ulimit = args.ulimit
        if ulimit and ulimit > 0:
            ulimit = raise_ulimit(ulimit) or ulimit

        # 3. Validate with Pydantic
        config = load_config(
            batch_size=args.batch_size,
            timeout=args.timeout,
            tries=args.tries,
            protocol="udp" if args.udp else "tcp",
            ulimit_override=ulimit,
            scan_order=args.scan_order,
            seed=args.seed,
            exclude_ports=parse_ports(",".join(_split(args.exclude_ports))) if args.exclude_ports else [],
            include_network_broadcast=not args.no_network_broadcast,
        )
        spec = port_spec_from_args(args).excluding(config.exclude_ports)
        strategy = PortStrategy(spec)

        # 4. Resolve targets before any scanning starts
        resolver = AddressResolver(nameserver_factory(args.resolver),
                                   include_network_broadcast=config.include_network_broadcast)
        hosts, errors = resolver.resolve(_split(args.addresses), exclude=_split(args.exclude_addresses))
        ui.display_resolution_errors(errors)

        # 5. Size the batch against the descriptor ceiling, once
        reporter = ProgressReporter()
        scheduler = ScanScheduler(config, reporter=reporter, on_open=ui.announce_open)
        advice = scheduler.advise()
        ui.display_ulimit_advice(advice)
        ui.display_start(len(hosts), len(strategy), config.protocol.value, advice)

        # 6. Scan
        with ui.track(reporter, total=len(hosts) * len(strategy)):
            result = asyncio.run(run_scan(scheduler, hosts, strategy))

    except HermesError as e:
        ui.show_message(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        ui.show_message("\nScan interrupted by user.", style="yellow")
        return 130

    ui.display_results(result, config.protocol.value)
    return 130 if result.cancelled else 0


if __name__ == "__main__":
    sys.exit(main())
