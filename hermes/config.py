from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

LOWEST_PORT = 1
HIGHEST_PORT = 65535


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class ScanOrder(str, Enum):
    """Order in which each host's ports are visited."""
    SERIAL = "serial"
    RANDOM = "random"


class ScanConfig(BaseModel):
    """
    Validation model for scan parameters.
    Enforces strict types and safe ranges before execution.
    """
    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(4500, ge=1, le=65535)
    timeout: int = Field(1500, ge=1, le=600_000)  # milliseconds
    tries: int = Field(1, ge=1, le=10)
    protocol: Protocol = Protocol.TCP
    ulimit_override: Optional[int] = Field(None, ge=1)
    scan_order: ScanOrder = ScanOrder.SERIAL
    seed: Optional[int] = None
    exclude_ports: List[int] = Field(default_factory=list)
    include_network_broadcast: bool = True

    @field_validator('exclude_ports')
    @classmethod
    def validate_exclude_ports(cls, v):
        bad = [p for p in v if not LOWEST_PORT <= p <= HIGHEST_PORT]
        if bad:
            raise ValueError(f"Excluded ports out of range 1-65535: {bad}")
        return sorted(set(v))

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0


def load_config(**options) -> ScanConfig:
    """
    Builds a ScanConfig, turning pydantic's ValidationError into ConfigError.
    Unset (None) options fall back to the model defaults.
    """
    options = {k: v for k, v in options.items() if v is not None}
    try:
        return ScanConfig(**options)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid scan configuration: {problems}") from e
