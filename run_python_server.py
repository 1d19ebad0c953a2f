#!/usr/bin/env python3
"""
Standalone script to run the recommendation API
"""
import logging
import os
import sys
from pathlib import Path

# Add current directory to Python path
current_dir = Path(__file__).parent
sys.path.insert(0, str(current_dir))

logger = logging.getLogger("run_python_server")


def main() -> None:
    import uvicorn
    from main import app  # noqa: F401  (configures logging)

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 3000))
    reload = os.getenv("NODE_ENV", "development") == "development"

    logger.info(f"Starting FastAPI server on {host}:{port}")
    logger.info(f"Environment: {os.getenv('NODE_ENV', 'development')} | auto-reload: {reload}")
    logger.info(f"API Documentation: http://{host}:{port}/api/docs")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info" if not reload else "debug"
    )


if __name__ == "__main__":
    main()
