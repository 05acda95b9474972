#!/usr/bin/env python3
"""
Run the valuation report web server.
"""

import logging

import uvicorn

from utils.config import Config

logger = logging.getLogger(__name__)


def main():
    """Start the web server."""
    config = Config.load()
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info(f"Starting valuation report engine on http://{config.host}:{config.port}")
    logger.info("Press Ctrl+C to stop")

    uvicorn.run(
        "web.app:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
    )


if __name__ == "__main__":
    main()
