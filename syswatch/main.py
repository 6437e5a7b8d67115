"""Main application entry point for the syswatch exporter."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from .collectors.device_collector import DeviceCollector
from .collectors.host_collector import HostCollector
from .collectors.peer_watcher import PeerWatcher
from .config.loader import ConfigLoader
from .config.models import SyswatchConfig
from .errors import (
    EXIT_CONFIG_ERROR,
    EXIT_NO_COLLECTORS,
    EXIT_OK,
    EXIT_RENDER_FAILURE,
    ConfigError,
    RenderError,
    SourceUnavailableError,
    StartupError,
)
from .services.exposition import ExpositionServer, render_snapshot
from .services.scheduler import CollectorScheduler, ScheduledCollector
from .services.snapshot_store import SnapshotStore
from .utils.logger import setup_logger
from .utils.metrics import Domain


class SyswatchApp:
    """
    Main exporter application.

    Wires collectors, the scheduler, the snapshot store and the exposition
    server together and owns their lifecycle.
    """

    def __init__(self, config: SyswatchConfig, logger: logging.Logger):
        """
        Initialize exporter application.

        Args:
            config: Validated configuration
            logger: Logger instance
        """
        self.config = config
        self.logger = logger
        self.store: Optional[SnapshotStore] = None
        self.server: Optional[ExpositionServer] = None
        self.scheduler: Optional[CollectorScheduler] = None
        self.entries: List[ScheduledCollector] = []

    def build_collectors(self) -> List[ScheduledCollector]:
        """
        Construct every enabled collector.

        A collector that cannot start is logged and left out; the caller
        decides whether an empty list is fatal.
        """
        config = self.config
        window = config.scheduler.staleness_window
        entries = []

        if config.devices.enabled:
            collector = DeviceCollector(config.devices, window, self.logger)
            if config.devices.require_devices:
                try:
                    count = collector.check_available()
                    self.logger.info(f"Device subsystem available with {count} device(s)")
                except SourceUnavailableError as e:
                    self.logger.error(f"Device collector disabled: {e}")
                    collector = None
            if collector is not None:
                entries.append(ScheduledCollector(collector, config.devices.interval, Domain.DEVICE))

        if config.host.enabled:
            entries.append(ScheduledCollector(
                HostCollector(config.host, window, self.logger),
                config.host.interval,
                Domain.HOST,
            ))

        if config.peers.enabled and config.peers.targets:
            for peer in config.peers.targets:
                self.logger.info(f"Watching peer {peer.hostname}: {peer.url}")
            watcher = PeerWatcher(config.peers, self.logger)
            entries.append(ScheduledCollector(
                watcher,
                config.peers.interval,
                Domain.PEER,
                timeout=watcher.cycle_timeout,
            ))

        return entries

    async def run(self, shutdown: Optional[asyncio.Event] = None) -> int:
        """
        Serve until shutdown is set or a termination signal arrives.

        Returns:
            int: Process exit code

        Raises:
            StartupError: If no collector starts or the listener cannot bind
        """
        shutdown = shutdown or asyncio.Event()
        self.entries = self.build_collectors()
        if not self.entries:
            raise StartupError("No collector could be started", EXIT_NO_COLLECTORS)

        self.store = SnapshotStore(self.logger)
        self.server = ExpositionServer(self.store, self.config.server, self.logger)
        self.scheduler = CollectorScheduler(
            self.store,
            self.logger,
            jitter_ratio=self.config.scheduler.jitter_ratio,
            grace_timeout=self.config.scheduler.grace_timeout,
        )

        try:
            await self.server.start()
            self._install_signal_handlers(shutdown)
            await self.scheduler.run(self.entries, shutdown)
        finally:
            await self.server.stop()
            for entry in self.entries:
                await entry.collector.close()

        self.logger.info("Shutdown complete")
        return EXIT_OK

    async def run_once(self) -> bytes:
        """
        Collect from every collector once and render the result.

        Returns:
            bytes: Rendered exposition body
        """
        self.entries = self.build_collectors()
        if not self.entries:
            raise StartupError("No collector could be started", EXIT_NO_COLLECTORS)

        store = SnapshotStore(self.logger)
        scheduler = CollectorScheduler(store, self.logger)
        try:
            results = await asyncio.gather(*(scheduler.collect_once(entry) for entry in self.entries))
            for entry, result in zip(self.entries, results):
                store.update(entry.domain, result)
        finally:
            for entry in self.entries:
                await entry.collector.close()
        return render_snapshot(store.current())

    def _install_signal_handlers(self, shutdown: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()

        def _request_shutdown(signum):
            self.logger.info(f"Received {signal.Signals(signum).name}, initiating graceful shutdown...")
            shutdown.set()

        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, _request_shutdown, signum)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread or platform without signal support
                self.logger.debug(f"Cannot install handler for {signal.Signals(signum).name}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Prometheus exporter for NVIDIA GPUs, host counters and peer liveness',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0  graceful shutdown
  1  configuration error
  2  exposition listener cannot bind
  3  no collector could be started
  4  --run-once output could not be rendered

Examples:
  # Serve on the default port 9101
  syswatch

  # Watch peers listed in a config file
  syswatch --config /etc/syswatch.yaml

  # Collect once and print the exposition
  syswatch --run-once
        """
    )

    parser.add_argument(
        '--config',
        default='/etc/syswatch.yaml',
        help='Path to configuration file (default: /etc/syswatch.yaml, optional)'
    )
    parser.add_argument('-a', '--address', help='Service address (overrides config)')
    parser.add_argument('-p', '--port', type=int, help='Service port (overrides config)')
    parser.add_argument(
        '-s', '--show-all-users',
        action='store_true',
        help='Report GPU memory of system accounts and unknown uids too'
    )
    parser.add_argument(
        '-c', '--combine-with-upstream',
        action='store_true',
        help='Prepend the local node exporter output to every scrape'
    )
    parser.add_argument('-u', '--upstream-port', type=int, help='Upstream exporter port')
    parser.add_argument(
        '--run-once',
        action='store_true',
        help='Collect once, print the exposition and exit'
    )
    parser.add_argument(
        '--log-level',
        default=os.getenv('LOG_LEVEL'),
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: config value or LOG_LEVEL env var)'
    )

    return parser.parse_args(argv)


def apply_overrides(config: SyswatchConfig, args: argparse.Namespace) -> SyswatchConfig:
    """
    Return config with command-line options applied.

    Raises:
        ConfigError: If an override fails validation
    """
    data = config.model_dump()
    if args.address:
        data['server']['address'] = args.address
    if args.port is not None:
        data['server']['port'] = args.port
    if args.combine_with_upstream:
        data['server']['combine_with_upstream'] = True
    if args.upstream_port is not None:
        data['server']['upstream_port'] = args.upstream_port
    if args.show_all_users:
        data['devices']['show_all_users'] = True
    if args.log_level:
        data['logging']['level'] = args.log_level
    return ConfigLoader.load_from_dict(data, source="command line")


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Parses command-line arguments, loads configuration and runs the exporter.
    """
    args = parse_args(argv)
    logger = setup_logger("syswatch", args.log_level or "INFO")

    try:
        config = apply_overrides(ConfigLoader.load_from_file(args.config), args)
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_CONFIG_ERROR

    logger = setup_logger("syswatch", config.logging.level)
    app = SyswatchApp(config, logger)

    try:
        if args.run_once:
            sys.stdout.write(asyncio.run(app.run_once()).decode("utf-8"))
            return EXIT_OK
        return asyncio.run(app.run())
    except StartupError as e:
        logger.error(f"Startup failed: {e}", extra={"exit_code": e.exit_code})
        return e.exit_code
    except RenderError as e:
        logger.error(f"Rendering failed: {e}")
        return EXIT_RENDER_FAILURE


if __name__ == '__main__':
    sys.exit(main())
