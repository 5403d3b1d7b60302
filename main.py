#!/usr/bin/env python3
import os
import logging
import uvicorn
from report_engine.app import create_app

logger = logging.getLogger("report_engine")

# Create the FastAPI app
app = create_app()


if __name__ == "__main__":
    host = os.getenv("REPORT_ENGINE_HOST", "0.0.0.0")
    port = int(os.getenv("REPORT_ENGINE_PORT", "8000"))
    reload_enabled = os.getenv("REPORT_ENGINE_RELOAD", "false").lower() == "true"

    logger.info(f"Starting report engine on {host}:{port}")
    uvicorn.run("main:app", host=host, port=port, reload=reload_enabled)
