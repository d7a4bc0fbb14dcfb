#!/usr/bin/env python3
"""Run the orchestrator API under uvicorn."""
import uvicorn

from src.api.dependencies import get_config

if __name__ == "__main__":
    config = get_config()
    # Single process: sessions and their event streams live in this process's memory
    uvicorn.run(
        "src.main:app",
        host=config.server.host,
        port=config.server.port,
        workers=1,
        log_config=None,  # setup_logging() in the lifespan owns the handlers
        timeout_graceful_shutdown=int(config.session.shutdown_timeout_seconds) + 5,
    )
