"""Metric data structures shared by collectors, the snapshot store and exposition."""

import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple


class Domain(Enum):
    """Partition of the snapshot owned by one collector kind."""

    DEVICE = "device"
    HOST = "host"
    PEER = "peer"


@dataclass(frozen=True)
class MetricSample:
    """A named, labeled numeric observation."""

    name: str
    value: float
    labels: Mapping[str, str] = field(default_factory=dict)
    collected_at: float = field(default_factory=time.time)
    stale: bool = False
    documentation: str = ""

    def __post_init__(self):
        """Freeze labels so a published sample can never change underneath a reader."""
        frozen = MappingProxyType({str(k): str(v) for k, v in self.labels.items()})
        object.__setattr__(self, "labels", frozen)
        object.__setattr__(self, "value", float(self.value))

    @property
    def label_keys(self) -> Tuple[str, ...]:
        return tuple(sorted(self.labels))

    def as_stale(self) -> "MetricSample":
        """Return a copy marked stale; value and collection time are kept."""
        return dataclasses.replace(self, labels=dict(self.labels), stale=True)


@dataclass
class CollectorResult:
    """Standard result format from all collectors."""

    domain: Domain
    samples: Tuple[MetricSample, ...] = ()
    error: Optional[str] = None
    timestamp: Optional[float] = None

    def __post_init__(self):
        """Set timestamp if not provided and pin samples to a tuple."""
        self.samples = tuple(self.samples)
        if self.timestamp is None:
            self.timestamp = time.time()

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, domain: Domain, error: str, samples: Iterable[MetricSample] = ()) -> "CollectorResult":
        return cls(domain=domain, samples=tuple(samples), error=error)
