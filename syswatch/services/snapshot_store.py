"""Process-wide store of the currently published metrics snapshot."""

import logging
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping, Optional, Tuple

from ..utils.metrics import CollectorResult, Domain, MetricSample


@dataclass(frozen=True)
class DomainState:
    """Published content of one domain."""

    samples: Tuple[MetricSample, ...] = ()
    updated_at: Optional[float] = None
    last_success: Optional[float] = None
    last_error: Optional[str] = None
    error_count: int = 0


@dataclass(frozen=True)
class Snapshot:
    """
    Immutable aggregate of every domain's latest samples.

    A Snapshot is never mutated after construction; publishing a new
    generation builds a fresh instance.
    """

    domains: Mapping[Domain, DomainState] = field(default_factory=dict)
    generation: int = 0
    generated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        merged = {domain: DomainState() for domain in Domain}
        merged.update(self.domains)
        object.__setattr__(self, "domains", MappingProxyType(merged))

    def state(self, domain: Domain) -> DomainState:
        return self.domains[domain]

    def samples(self, domain: Domain) -> Tuple[MetricSample, ...]:
        return self.domains[domain].samples

    def iter_samples(self) -> Iterator[MetricSample]:
        """Yield every sample, domains in declaration order."""
        for domain in Domain:
            yield from self.domains[domain].samples

    def __len__(self) -> int:
        return sum(len(state.samples) for state in self.domains.values())


class SnapshotStore:
    """
    Holds the current Snapshot and publishes new generations atomically.

    Readers call current() and get whatever reference is published at that
    moment; they never take a lock. Writers are serialized among themselves
    so two domain updates cannot lose each other, and each update ends with
    a single reference assignment, which is the publication point.
    """

    def __init__(self, logger: logging.Logger = None):
        self.logger = (logger or logging.getLogger(__name__)).getChild("SnapshotStore")
        self._current = Snapshot()
        self._write_lock = threading.Lock()

    def current(self) -> Snapshot:
        """Return the latest fully published Snapshot."""
        return self._current

    def update(self, domain: Domain, result: CollectorResult) -> Snapshot:
        """
        Replace one domain's content with a completed collection.

        Args:
            domain: Domain being updated
            result: Collector output for that domain

        Returns:
            Snapshot: The newly published generation

        Raises:
            ValueError: If the result belongs to another domain
        """
        if result.domain is not domain:
            raise ValueError(
                f"Result for {result.domain.value} cannot update the {domain.value} domain"
            )

        with self._write_lock:
            previous = self._current
            prior_state = previous.state(domain)
            now = time.time()

            if result.ok:
                new_state = DomainState(
                    samples=result.samples,
                    updated_at=now,
                    last_success=result.timestamp,
                    last_error=None,
                    error_count=prior_state.error_count,
                )
            else:
                new_state = DomainState(
                    samples=result.samples,
                    updated_at=now,
                    last_success=prior_state.last_success,
                    last_error=result.error,
                    error_count=prior_state.error_count + 1,
                )

            domains = dict(previous.domains)
            domains[domain] = new_state
            published = Snapshot(
                domains=domains,
                generation=previous.generation + 1,
                generated_at=now,
            )
            self._current = published

        self.logger.debug(
            f"Published generation {published.generation} "
            f"({domain.value}: {len(result.samples)} samples)"
        )
        return published
