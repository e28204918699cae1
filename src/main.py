"""Entry point for the document ingestion API server."""

import argparse
from pathlib import Path

import uvicorn

from src.utils.config import load_config
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> None:
    """Start the API server on the configured host and port.

    The API builds its services from ``configs/config.yaml``; ``--host``
    and ``--port`` override the ``server`` section of that file.
    """
    parser = argparse.ArgumentParser(description="Document ingestion API server")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port")
    args = parser.parse_args(argv)

    config = load_config(Path("configs/config.yaml"))
    setup_logging(config.log_level)
    host = args.host or config.server.host
    port = args.port or config.server.port
    logger.info("Serving document ingestion API on %s:%d", host, port)
    uvicorn.run("src.api.app:app", host=host, port=port)


if __name__ == "__main__":
    main()
