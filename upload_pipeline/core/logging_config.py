# upload_pipeline/core/logging_config.py

import logging
import sys

from upload_pipeline.core.config import LOG_LEVEL

logger = logging.getLogger("upload_pipeline")


def setup_logging(level: str = LOG_LEVEL):
    """
    Configures the root logger for the application.
    Call once at startup (FastAPI app module or CLI entry point).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
        stream=sys.stdout,
    )
    # Silence noisy libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
