"""
Hermes - The Swift Port Scanner

Resolves targets, orders ports and scans host x port pairs under a
descriptor-aware concurrency cap.
"""

from .config import Protocol, ScanConfig, ScanOrder, load_config
from .errors import ConfigError, HermesError, NoTargetsError, ResolutionError, ResourceExhaustionWarning
from .progress import ProgressEvent, ProgressReporter, ProgressState
from .resolver import (
    AddressResolver,
    NameserverResolver,
    ResolvedHost,
    Resolution,
    StaticResolver,
    SystemResolver,
)
from .results import Outcome, ScanResult, Settlement
from .scanner import ScanScheduler, WorkItem, scan
from .strategy import PortStrategy
from .ulimit import UlimitAdvice, UlimitAdvisor
from .utils import PortSpec, parse_ports

__version__ = "0.1.0"
