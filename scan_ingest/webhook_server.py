"""
Webhook and health server for the Image Scan Ingest service.
"""

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional
import psutil
from aiohttp import web
from . import __version__
from .config import settings
from .logging import get_logger
from .models import HealthStatus, ProcessingResult, ResultStatus
from .processor import ScanResultProcessor


class WebhookServer:
    """HTTP server receiving scan results, plus health checks and metrics."""

    def __init__(
        self,
        processor: ScanResultProcessor,
        webhook_path: Optional[str] = None,
        max_workers: Optional[int] = None,
    ):
        self.processor = processor
        self.logger = get_logger("webhook_server")
        self.webhook_path = webhook_path or settings.webhook_path
        # Scan events block on database round-trips, so each runs on its own worker thread
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.max_workers,
            thread_name_prefix="scan-event",
        )
        self.app = web.Application()
        self.app.on_cleanup.append(self._shutdown_executor)
        self.setup_routes()

    def setup_routes(self):
        """Setup HTTP routes."""
        self.app.router.add_post(self.webhook_path, self.scan_result_handler)
        self.app.router.add_get("/health", self.health_handler)
        self.app.router.add_get("/metrics", self.metrics_handler)
        self.app.router.add_get("/", self.root_handler)

    async def _shutdown_executor(self, app):
        self.executor.shutdown(wait=True)

    async def scan_result_handler(self, request):
        """Receive one scan result delivery."""
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            result = ProcessingResult(status=ResultStatus.BAD_REQUEST, message=f"Invalid body: {e}")
            return web.json_response(result.to_response(), status=result.status.http_status)

        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self.executor, self.processor.process_payload, payload)
        except Exception as e:
            self.logger.exception(f"❌ Unexpected error processing scan event: {e}")
            return web.json_response({"error": str(e)}, status=500)

        return web.json_response(result.to_response(), status=result.status.http_status)

    async def health_handler(self, request):
        """Health check endpoint."""
        try:
            loop = asyncio.get_running_loop()
            connection_ok = await loop.run_in_executor(self.executor, self.processor.test_connection)

            health_status = HealthStatus(
                status="healthy" if connection_ok else "unhealthy",
                metrics={
                    "database": "connected" if connection_ok else "unreachable",
                    "tag_cache_size": len(self.processor.tag_cache),
                },
            )

            return web.json_response(
                health_status.model_dump(mode="json"),
                status=200 if connection_ok else 503
            )

        except Exception as e:
            self.logger.error(f"Health check failed: {e}")
            return web.json_response(
                {"status": "unhealthy", "error": str(e)},
                status=503
            )

    async def metrics_handler(self, request):
        """Metrics endpoint."""
        try:
            metrics = self.processor.get_metrics()

            # Add additional system metrics
            system_metrics = {
                "cpu_percent": psutil.cpu_percent(),
                "memory_percent": psutil.virtual_memory().percent,
                "process_rss_bytes": psutil.Process().memory_info().rss,
            }

            metrics.update(system_metrics)

            return web.json_response(metrics)

        except Exception as e:
            self.logger.error(f"Metrics retrieval failed: {e}")
            return web.json_response(
                {"error": str(e)},
                status=500
            )

    async def root_handler(self, request):
        """Root endpoint with service information."""
        info = {
            "service": "Image Scan Ingest",
            "version": __version__,
            "endpoints": {
                self.webhook_path: "Scan result webhook (POST)",
                "/health": "Health check endpoint",
                "/metrics": "Processing metrics",
                "/": "Service information"
            },
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        return web.json_response(info)

    async def start(self, host: Optional[str] = None, port: Optional[int] = None):
        """Start the webhook server."""
        host = host or settings.webhook_host
        port = port or settings.webhook_port

        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(runner, host, port)

        await site.start()

        self.logger.info(f"🚀 Webhook server listening on {host}:{port}{self.webhook_path}")

        return runner

    async def stop(self, runner):
        """Stop the webhook server."""
        await runner.cleanup()
        self.logger.info("Webhook server stopped")


async def run_webhook_server(
    processor: ScanResultProcessor,
    host: Optional[str] = None,
    port: Optional[int] = None,
):
    """Run the webhook server until cancelled."""
    server = WebhookServer(processor)
    runner = await server.start(host, port)

    try:
        # Keep the server running
        while True:
            await asyncio.sleep(3600)
    finally:
        await server.stop(runner)
