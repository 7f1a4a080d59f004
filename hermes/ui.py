from contextlib import contextmanager
from typing import Iterable, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from .errors import ResolutionError
from .progress import ProgressEvent, ProgressReporter
from .results import Outcome, ScanResult, Settlement
from .ulimit import UlimitAdvice

console = Console()
err_console = Console(stderr=True)


class ScannerUI:
    """
    Terminal rendering for the CLI. Nothing in here feeds back into scanning.

    greppable: print only `ip -> [ports]` lines.
    accessible: no colours, spinners or live bars (screen reader friendly).
    """

    def __init__(self, greppable: bool = False, accessible: bool = False,
                 output: Optional[Console] = None):
        self.greppable = greppable
        self.accessible = accessible
        if output is None:
            output = Console(no_color=True, highlight=False) if accessible else console
        self.console = output

    def _say(self, text: str):
        if not self.greppable:
            self.console.print(text)

    def display_welcome(self):
        if self.greppable or self.accessible:
            return
        self.console.rule("[bold magenta]HERMES - The Swift Port Scanner[/bold magenta]")

    def display_resolution_errors(self, errors: Iterable[ResolutionError]):
        for error in errors:
            self._say(f"[yellow][!] Host {escape(repr(error.token))} could not be resolved: {escape(error.reason)}[/yellow]")

    def display_start(self, host_count: int, port_count: int, protocol: str,
                      advice: Optional[UlimitAdvice] = None):
        if self.greppable:
            return
        lines = [f"[bold green]Scanning {host_count} host(s) x {port_count} {protocol.upper()} port(s)[/bold green]"]
        if advice is not None:
            limit = advice.limit if advice.limit is not None else "unknown"
            lines.append(f"[dim]Batch size {advice.batch_size} (open file limit {limit})[/dim]")
        if self.accessible:
            for line in lines:
                self.console.print(line)
        else:
            self.console.print(Panel.fit("\n".join(lines), border_style="blue"))

    def display_ulimit_advice(self, advice: UlimitAdvice):
        if advice.clamped:
            self._say(
                f"[yellow][!] File limit {advice.limit} is lower than the batch size "
                f"{advice.requested}; scanning with {advice.batch_size}. "
                f"Consider raising it with --ulimit.[/yellow]"
            )

    def announce_open(self, settlement: Settlement):
        """Prints an open socket the moment it is found. Silent in greppable mode."""
        if self.greppable:
            return
        target = f"{settlement.host.ip}:{settlement.port}"
        if self.accessible:
            self.console.print(f"Open {target}", markup=False, highlight=False)
        else:
            self.console.print(f"Open [bold purple]{target}[/bold purple]")

    def create_progress(self):
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=self.console,
            transient=True,
        )

    @contextmanager
    def track(self, reporter: ProgressReporter, total: int, description: str = "Scanning"):
        """Drives a rich progress bar from the reporter's events."""
        if self.greppable or self.accessible:
            yield
            return

        with self.create_progress() as progress:
            task_id = progress.add_task(f"[cyan]{description}...", total=total)

            def on_event(event: ProgressEvent):
                progress.update(task_id, completed=event.completed, total=event.total)

            reporter.subscribe(on_event)
            yield

    def display_results(self, result: ScanResult, protocol: str = "tcp"):
        if self.greppable:
            for ip, ports in result.as_dict(include_ambiguous=True).items():
                self.console.print(f"{ip} -> [{','.join(str(p) for p in ports)}]",
                                   highlight=False, markup=False)
            return

        table = Table(title="Scan Results", show_header=True, header_style="bold magenta")
        table.add_column("Host", style="cyan")
        table.add_column("Open Ports", style="green")
        if result.ambiguous:
            table.add_column("Open|Filtered", style="yellow")

        for host in result.hosts():
            row = [str(host), ", ".join(str(p) for p in result.open_ports.get(host, ())) or "-"]
            if result.ambiguous:
                row.append(", ".join(str(p) for p in result.ambiguous.get(host, ())) or "-")
            table.add_row(*row)

        self.console.print("\n")
        if result.hosts():
            self.console.print(table)
        else:
            self.console.print(f"[bold]No open {protocol.upper()} ports found.[/bold]")

        counts = result.counts
        self.console.print(f"\n[bold]Scan completed in {result.duration:.2f} seconds.[/bold]")
        self.console.print(f"[bold]Open ports found: {result.open_count}[/bold]")
        self.console.print(
            f"[dim]Not shown: {counts[Outcome.CLOSED]} closed, {counts[Outcome.FILTERED]} filtered, "
            f"{counts[Outcome.ERROR]} errored[/dim]"
        )
        if result.cancelled:
            self.console.print(
                f"[yellow]Scan interrupted: {result.completed}/{result.total} attempts settled.[/yellow]"
            )
        for settlement in result.errors[:5]:
            self.console.print(
                f"[dim red]  {settlement.host.ip}:{settlement.port} {escape(settlement.reason)} "
                f"(after {settlement.attempts} tries)[/dim red]"
            )

    def show_message(self, msg, style="bold red"):
        err_console.print(f"[{style}]{msg}[/{style}]")
