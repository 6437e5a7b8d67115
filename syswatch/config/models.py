"""Pydantic configuration models for the syswatch exporter."""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional


class ServerConfig(BaseModel):
    """Exposition HTTP server configuration."""
    address: str = "0.0.0.0"
    port: int = Field(default=9101, ge=1, le=65535)
    path: str = "/metrics"
    combine_with_upstream: bool = False
    upstream_port: int = Field(default=9100, ge=1, le=65535)
    upstream_timeout: float = Field(default=2.0, gt=0)

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Scrape path must be absolute."""
        if not v.startswith('/'):
            raise ValueError('Scrape path must start with /')
        return v


class DeviceConfig(BaseModel):
    """Accelerator device collector configuration."""
    enabled: bool = True
    interval: float = Field(default=5.0, gt=0)
    show_all_users: bool = False
    # Abort startup instead of serving an empty device domain when NVML is absent
    require_devices: bool = False


class HostConfig(BaseModel):
    """Host counter collector configuration."""
    enabled: bool = True
    interval: float = Field(default=5.0, gt=0)


class PeerConfig(BaseModel):
    """A peer server whose health endpoint is polled."""
    hostname: str
    address: str
    path: str = "/status"
    method: str = "GET"
    timeout: float = Field(default=2.0, gt=0)
    interval: Optional[float] = Field(default=None, gt=0)  # Falls back to peers.interval
    failure_threshold: int = Field(default=3, ge=1)
    backoff_cap: float = Field(default=300.0, gt=0)

    @field_validator('address')
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Peer address must start with http:// or https://')
        return v.rstrip('/')

    @field_validator('method')
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.upper()

    @property
    def url(self) -> str:
        if not self.path:
            return self.address
        return self.address + (self.path if self.path.startswith('/') else '/' + self.path)


class PeersConfig(BaseModel):
    """Peer watcher configuration."""
    enabled: bool = True
    interval: float = Field(default=10.0, gt=0)
    targets: List[PeerConfig] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_targets(self) -> 'PeersConfig':
        """Peer names must be unique; timeouts and backoff caps are checked against the interval."""
        seen = set()
        for peer in self.targets:
            if peer.hostname in seen:
                raise ValueError(f'Duplicate peer hostname: {peer.hostname}')
            seen.add(peer.hostname)
            interval = peer.interval or self.interval
            if peer.timeout >= interval:
                raise ValueError(
                    f'Peer {peer.hostname}: timeout ({peer.timeout}) '
                    f'must be < check interval ({interval})'
                )
            if peer.backoff_cap < interval:
                raise ValueError(
                    f'Peer {peer.hostname}: backoff_cap ({peer.backoff_cap}) '
                    f'must be >= check interval ({interval})'
                )
        return self


class SchedulerConfig(BaseModel):
    """Collection scheduling configuration."""
    jitter_ratio: float = Field(default=0.1, ge=0, le=0.5)
    grace_timeout: float = Field(default=5.0, gt=0)
    staleness_window: float = Field(default=60.0, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Unknown log level: {v}')
        return level


class SyswatchConfig(BaseModel):
    """Root configuration model for the exporter."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    devices: DeviceConfig = Field(default_factory=DeviceConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    peers: PeersConfig = Field(default_factory=PeersConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
