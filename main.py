"""
Container entrypoint for the valuation report engine.

Binds to 0.0.0.0:$PORT.
"""

import logging
import os

import uvicorn

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    port = int(os.getenv("PORT", "8000"))
    logging.getLogger(__name__).info(f"Starting valuation report engine on port {port}")

    # Import app here to ensure clean module loading
    from web.app import app

    uvicorn.run(app, host="0.0.0.0", port=port)
