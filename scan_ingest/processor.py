"""
Main processor for the Image Scan Ingest service.
"""

import time
from typing import Any, Dict, List, Optional
from pydantic import ValidationError
from .image_store import ImageStore, StoreError
from .logging import get_logger, MetricsLogger
from .models import ProcessingResult, ResolvedTag, ResultStatus, ScanResultEvent
from .performance_monitor import performance_monitor
from .tag_cache import TagCache
from .tag_resolver import TagResolver
from .tags import dedupe_observations


class ProcessorError(Exception):
    """Custom exception for processor errors."""
    pass


class InvalidEventError(ProcessorError):
    """Raised when a webhook payload is not a valid scan result event."""
    pass


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as ``Invalid body: {field: [messages]}``."""
    field_errors: Dict[str, List[str]] = {}
    for detail in error.errors():
        field = ".".join(str(part) for part in detail["loc"]) or "body"
        field_errors.setdefault(field, []).append(detail["msg"])
    return f"Invalid body: {field_errors}"


class ScanResultProcessor:
    """Applies scan result events to the image and tag store.

    Safe to share across threads: the only mutable shared state is the tag
    cache, which does its own locking.
    """

    def __init__(
        self,
        store: Optional[ImageStore] = None,
        cache: Optional[TagCache] = None,
        resolver: Optional[TagResolver] = None,
    ):
        self.logger = get_logger("processor")
        self.metrics = MetricsLogger()
        self.store = store or ImageStore()
        self.tag_cache = cache if cache is not None else TagCache()
        self.resolver = resolver or TagResolver(self.store, self.tag_cache)

    def parse_event(self, payload: Any) -> ScanResultEvent:
        """Validate a raw webhook payload."""
        if not isinstance(payload, dict):
            raise InvalidEventError("Invalid body: expected a JSON object")
        try:
            return ScanResultEvent.model_validate(payload)
        except ValidationError as e:
            raise InvalidEventError(format_validation_error(e)) from e

    def process_payload(self, payload: Any) -> ProcessingResult:
        """Validate and process a raw webhook payload."""
        try:
            event = self.parse_event(payload)
        except InvalidEventError as e:
            self.logger.warning(f"⚠️  Rejected scan event: {e}")
            performance_monitor.record_event_processed(ResultStatus.BAD_REQUEST.value, 0.0)
            return ProcessingResult(status=ResultStatus.BAD_REQUEST, message=str(e))
        return self.process_event(event)

    def process_event(self, event: ScanResultEvent) -> ProcessingResult:
        """Process a single scan result event."""
        start_time = time.time()

        if not event.is_valid:
            result = self.purge_image(event.id)
        else:
            result = self._apply_tags(event)

        result.processing_time = time.time() - start_time
        performance_monitor.record_event_processed(result.status.value, result.processing_time)

        if result.ok:
            if result.purged:
                self.metrics.log_image_purged(event.id)
                self.logger.info(f"🗑️  Image {event.id}: invalid, removed ({result.processing_time:.3f}s)")
            else:
                self.metrics.log_event_processed(event.id, len(result.tags_applied), result.processing_time)
                self.logger.info(
                    f"🏷️  Image {event.id}: {len(result.tags_applied)} tags applied "
                    f"({result.processing_time:.3f}s)"
                )
        else:
            self.metrics.log_event_failure(event.id, f"{result.status.value}: {result.message}")
        return result

    def purge_image(self, image_id: int) -> ProcessingResult:
        """Delete an image the scanner declared invalid.

        Best-effort and always successful: an image that is already gone is
        the desired end state, and any other delete failure is logged and left
        for cleanup elsewhere. Tags are never processed for a purged image.
        """
        try:
            if not self.store.delete_image(image_id):
                self.logger.debug(f"Image {image_id} already absent, nothing to purge")
        except Exception as e:
            self.logger.warning(f"⚠️  Could not delete invalid image {image_id}, ignoring: {e}")
        return ProcessingResult(image_id=image_id, status=ResultStatus.OK, purged=True)

    def _apply_tags(self, event: ScanResultEvent) -> ProcessingResult:
        image_id = event.id
        result = ProcessingResult(image_id=image_id)

        # Automated tags are rebuilt from scratch on every scan
        try:
            self.store.delete_automated_tags(image_id)
        except StoreError as e:
            return self._fault(result, ResultStatus.SERVER_FAULT, str(e))

        observations = dedupe_observations(event.tags or [])
        resolved: List[ResolvedTag] = []
        if observations:
            try:
                resolved = self.resolver.resolve_observations(observations)
            except StoreError as e:
                return self._fault(result, ResultStatus.SERVER_FAULT, str(e))

        if resolved:
            try:
                self.store.upsert_image_tags(image_id, resolved)
            except StoreError as e:
                return self._upsert_failed(result, e)
            result.tags_applied = [tag.name for tag in resolved]

        # Runs after the upsert has committed; a failure here leaves the tags in place
        try:
            if not self.store.update_scan_status(image_id):
                self.logger.debug(f"Image {image_id} vanished before its scan status was updated")
        except StoreError as e:
            # Partial success: tags_applied still lists the committed associations
            result.status = ResultStatus.SERVER_FAULT
            result.message = str(e)

        return result

    def _upsert_failed(self, result: ProcessingResult, error: StoreError) -> ProcessingResult:
        # A failed upsert usually means the image was deleted mid-flight
        try:
            exists = self.store.image_exists(result.image_id)
        except StoreError as e:
            return self._fault(result, ResultStatus.SERVER_FAULT, str(e))
        if not exists:
            return self._fault(result, ResultStatus.NOT_FOUND, "Image not found")
        return self._fault(result, ResultStatus.SERVER_FAULT, str(error))

    def _fault(self, result: ProcessingResult, status: ResultStatus, message: str) -> ProcessingResult:
        result.status = status
        result.message = message
        result.tags_applied = []
        return result

    def prewarm_cache(self) -> int:
        """Load all stored tags into the tag cache."""
        return self.resolver.prewarm()

    def get_metrics(self) -> Dict[str, Any]:
        """Get current processing metrics."""
        return {
            "basic_metrics": self.metrics.get_metrics(),
            "performance_metrics": performance_monitor.get_metrics_dict(),
            "tag_cache_size": len(self.tag_cache),
        }

    def test_connection(self) -> bool:
        """Test the connection to the store."""
        return self.store.test_connection()

    def close(self):
        """Clean up resources."""
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
