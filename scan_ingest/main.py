"""
Main entry point for the Image Scan Ingest service.
"""

import asyncio
import json
import sys
import argparse
from pathlib import Path
from typing import Optional
from .config import settings
from .database import dispose_engines, get_engine
from .image_store import ImageStore
from .logging import setup_logging, get_logger
from .performance_monitor import performance_monitor
from .processor import ScanResultProcessor
from .webhook_server import run_webhook_server


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Image Scan Ingest - apply automated image scan results to image/tag storage"
    )

    parser.add_argument(
        "--host",
        type=str,
        help="Override the webhook bind address from configuration"
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Override the webhook port from configuration"
    )

    parser.add_argument(
        "--database-url",
        type=str,
        help="Override the database URL from configuration"
    )

    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the database schema and exit"
    )

    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Test connection to the database and exit"
    )

    parser.add_argument(
        "--process-file",
        type=Path,
        metavar="EVENT_JSON",
        help="Process a single scan result event from a JSON file and exit"
    )

    parser.add_argument(
        "--prewarm",
        action="store_true",
        help="Load all stored tags into the tag cache before serving"
    )

    return parser.parse_args(argv)


def process_event_file(processor: ScanResultProcessor, path: Path) -> int:
    """Process one event read from disk. Returns a process exit code."""
    logger = get_logger("main")

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"❌ Could not read event file {path}: {e}")
        return 1

    result = processor.process_payload(payload)
    print(json.dumps({"status": result.status.value, **result.to_response()}))
    return 0 if result.ok else 1


async def serve(processor: ScanResultProcessor, host: Optional[str], port: Optional[int]):
    """Serve webhook deliveries until interrupted."""
    try:
        await run_webhook_server(processor, host, port)
    except asyncio.CancelledError:
        pass


def main(argv=None):
    """Main entry point."""
    # Setup logging
    setup_logging()
    logger = get_logger("main")

    # Parse arguments
    args = parse_arguments(argv)

    database_url = args.database_url or settings.database_url

    if args.init_db:
        get_engine(database_url, echo=settings.database_echo)
        logger.info("✅ Database schema is ready")
        return 0

    processor = None
    try:
        # Initialize processor
        processor = ScanResultProcessor(store=ImageStore(database_url))

        # Handle special commands
        if args.test_connection:
            logger.info("🔍 Testing connection to the database")
            if processor.test_connection():
                logger.info("✅ Connection test successful")
                return 0
            else:
                logger.error("❌ Connection test failed")
                return 1

        if args.process_file:
            return process_event_file(processor, args.process_file)

        if args.prewarm or settings.prewarm_tag_cache:
            processor.prewarm_cache()

        logger.info("🚀 Starting Image Scan Ingest")
        asyncio.run(serve(processor, args.host, args.port))
        return 0

    except KeyboardInterrupt:
        logger.info("⏹️  Service interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"❌ Unexpected error: {str(e)}")
        return 1
    finally:
        performance_monitor.log_performance_summary()
        if processor is not None:
            processor.close()
        dispose_engines()


if __name__ == "__main__":
    sys.exit(main())
