"""
Logging configuration for the Image Scan Ingest service.
"""

import logging
import threading
from typing import Any, Dict
from rich.console import Console
from rich.logging import RichHandler
from .config import settings


def setup_logging() -> None:
    """Configure clean, simple logging output."""

    # Configure standard library logging with Rich handler
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.log_level),
        handlers=[RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
            show_level=False,
            markup=True
        )],
        force=True  # Override any existing configuration
    )

    # Silence noisy third-party loggers
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a standard logger instance."""
    return logging.getLogger(name)


class MetricsLogger:
    """Logger for tracking scan event metrics."""

    def __init__(self):
        self.logger = get_logger("metrics")
        self._lock = threading.Lock()
        self.metrics: Dict[str, Any] = {
            "events_processed": 0,
            "images_purged": 0,
            "tags_applied": 0,
            "failures": 0,
            "processing_time": 0.0,
        }

    def log_event_processed(self, image_id: int, tags_count: int, processing_time: float) -> None:
        """Log a successfully processed scan event."""
        with self._lock:
            self.metrics["events_processed"] += 1
            self.metrics["tags_applied"] += tags_count
            self.metrics["processing_time"] += processing_time
            total = self.metrics["events_processed"]

        # Only log individual events at DEBUG level to avoid spam
        self.logger.debug(
            f"Event processed: image {image_id} | Tags: {tags_count} | "
            f"Time: {processing_time:.3f}s | Total: {total} events"
        )

    def log_image_purged(self, image_id: int) -> None:
        """Log an image removed because the scanner declared it invalid."""
        with self._lock:
            self.metrics["events_processed"] += 1
            self.metrics["images_purged"] += 1

        self.logger.debug(f"Image purged: {image_id}")

    def log_event_failure(self, image_id: int, error: str) -> None:
        """Log a failed scan event."""
        with self._lock:
            self.metrics["failures"] += 1

        # Log failures at WARNING level (less verbose than ERROR but still visible)
        self.logger.warning(f"Scan event failed: image {image_id} | Error: {error}")

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics."""
        with self._lock:
            return self.metrics.copy()
