"""
Descriptor-ceiling aware batch sizing.

Every in-flight probe holds a socket, so the batch size must stay below
the process's open-file limit with room left for stdio, DNS sockets and
whatever runs after the scan.
"""

import logging
from dataclasses import dataclass
from typing import Optional

try:
    import resource
except ImportError:  # Windows has no RLIMIT_NOFILE
    resource = None

logger = logging.getLogger(__name__)

RESERVED_DESCRIPTORS = 100
AVERAGE_BATCH_SIZE = 3000
MIN_USABLE_BATCH = 10


@dataclass(frozen=True)
class UlimitAdvice:
    batch_size: int
    requested: int
    limit: Optional[int]
    clamped: bool = False
    exhausted: bool = False


class UlimitAdvisor:
    """Pure function object: (requested batch, descriptor limit) -> UlimitAdvice."""

    def __init__(self, reserved: int = RESERVED_DESCRIPTORS,
                 average_batch: int = AVERAGE_BATCH_SIZE,
                 min_usable: int = MIN_USABLE_BATCH):
        self.reserved = reserved
        self.average_batch = average_batch
        self.min_usable = min_usable

    def advise(self, requested: int, limit: Optional[int]) -> UlimitAdvice:
        if limit is None:
            return UlimitAdvice(requested, requested, None)

        if requested <= limit - self.reserved:
            return UlimitAdvice(requested, requested, limit)

        # Small ceilings lose proportionally more to the reserve, so halve instead
        if limit < self.average_batch:
            batch = limit // 2
        else:
            batch = limit - self.reserved
        batch = max(1, min(batch, requested))

        return UlimitAdvice(
            batch_size=batch,
            requested=requested,
            limit=limit,
            clamped=batch < requested,
            exhausted=batch < min(requested, self.min_usable),
        )


def advise(requested: int, limit: Optional[int]) -> UlimitAdvice:
    return UlimitAdvisor().advise(requested, limit)


def detect_ulimit() -> Optional[int]:
    """Soft RLIMIT_NOFILE, or None where it cannot be read or is unlimited."""
    if resource is None:
        return None
    try:
        soft, _hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (OSError, ValueError) as e:
        logger.debug("Could not read descriptor limit: %s", e)
        return None
    if soft == resource.RLIM_INFINITY:
        return None
    return soft


def raise_ulimit(value: int) -> Optional[int]:
    """
    Tries to lift the soft descriptor limit to `value` (capped by the hard
    limit). Returns the soft limit in effect afterwards.
    """
    if resource is None:
        return None
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    target = value if hard == resource.RLIM_INFINITY else min(value, hard)
    if target != soft:
        try:
            resource.setrlimit(resource.RLIMIT_NOFILE, (target, hard))
        except (OSError, ValueError) as e:
            logger.warning("Could not raise the open file limit to %d: %s", value, e)
            return detect_ulimit()
        logger.info("Open file limit set to %d", target)
    return detect_ulimit()
