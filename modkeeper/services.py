from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .config import ModkeeperConfig, load_config
from .coordinator import UpdateCheckCoordinator
from .fetcher import ArtifactFetcher
from .integrity import IntegrityVerifier
from .mods import UpdateChecker
from .monitor import ErrorMonitor
from .notify import LoggingNotificationSink, NotificationSink
from .registry import ModrinthClient, RegistryClient
from .store import JsonFileStore
from .versions import VersionResolver
from .watcher import AvailabilityWatcher, WatcherRegistry

ERROR_REPORT_FILENAME = "error-report.json"
ERROR_LOG_FILENAME = "error-log.json"


@dataclass
class Services:
    config: ModkeeperConfig
    store: JsonFileStore
    monitor: ErrorMonitor
    registry: RegistryClient
    resolver: VersionResolver
    verifier: IntegrityVerifier
    fetcher: ArtifactFetcher
    update_checker: UpdateChecker
    coordinator: UpdateCheckCoordinator
    watcher: AvailabilityWatcher

    def start_background(self) -> None:
        self.monitor.start()
        self.watcher.start(self.config.watch_tick_seconds)

    def stop_background(self) -> None:
        self.watcher.stop()
        self.coordinator.stop_periodic()
        self.monitor.stop()


def build_services(
    cfg: ModkeeperConfig,
    *,
    registry: Optional[RegistryClient] = None,
    notifier: Optional[NotificationSink] = None,
) -> Services:
    """Wire every service for one server root."""
    store = JsonFileStore()
    monitor = ErrorMonitor(
        max_log_size=cfg.error_log_max,
        retention=timedelta(days=cfg.error_retention_days),
        store=store,
        report_path=cfg.state_dir / ERROR_REPORT_FILENAME,
        entries_path=cfg.state_dir / ERROR_LOG_FILENAME,
    )
    client = registry or ModrinthClient(cfg.registry_url, user_agent=cfg.api_user_agent)
    resolver = VersionResolver(client)
    verifier = IntegrityVerifier(store, monitor=monitor)
    fetcher = ArtifactFetcher(
        verifier,
        monitor=monitor,
        user_agent=cfg.api_user_agent,
        timeout=cfg.download_timeout,
    )

    def config_loader(root):
        return cfg if root is None or root == cfg.server_root else load_config(root)

    update_checker = UpdateChecker(resolver, monitor=monitor, config_loader=config_loader)
    watcher = AvailabilityWatcher(
        WatcherRegistry(store),
        resolver,
        notifier or LoggingNotificationSink(),
        interval_hours=cfg.watch_interval_hours,
        history_limit=cfg.history_limit,
        monitor=monitor,
    )
    return Services(
        config=cfg,
        store=store,
        monitor=monitor,
        registry=client,
        resolver=resolver,
        verifier=verifier,
        fetcher=fetcher,
        update_checker=update_checker,
        coordinator=UpdateCheckCoordinator(update_checker),
        watcher=watcher,
    )
