from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from rich.console import Console

from .models import FulfillmentRecord

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify_fulfilled(self, server: Path, record: FulfillmentRecord) -> None:  # pragma: no cover - protocol
        ...


class LoggingNotificationSink:
    def notify_fulfilled(self, server: Path, record: FulfillmentRecord) -> None:
        logger.info(
            "Compatible version %s of %s is now available for %s (%s)",
            record.version_found,
            record.mod_name,
            server,
            record.target,
        )


class ConsoleNotificationSink(LoggingNotificationSink):
    """Log the event and print it for an interactive operator."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def notify_fulfilled(self, server: Path, record: FulfillmentRecord) -> None:
        super().notify_fulfilled(server, record)
        self.console.print(
            f"[green]Mod available:[/green] {record.mod_name} {record.version_found} "
            f"now supports {record.target.loader} {record.target.game_version}."
        )
