"""Camera service entry point.

Starts the FastAPI server with uvicorn.

Usage:
    python -m camstream.main
    python -m camstream.main --host 0.0.0.0 --port 8080
"""

import argparse
import logging
import sys

import uvicorn

from camstream.config import get_settings


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the camera service."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def main():
    """Main entry point for the camera service."""
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Camstream - camera capture, recording and live streaming"
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from settings)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: from settings)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=settings.server.log_level.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from settings)",
    )

    args = parser.parse_args()

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    host = args.host or settings.server.host
    port = args.port or settings.server.port

    logger.info("=" * 60)
    logger.info("Camstream camera service")
    logger.info("=" * 60)
    logger.info(f"Recordings: {settings.recording.default_path}")
    logger.info(f"Screenshots: {settings.storage.screenshot_path}")
    logger.info(f"Starting server on {host}:{port}")

    uvicorn.run(
        "camstream.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
