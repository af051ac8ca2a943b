import sys
from loguru import logger
from core.config import settings

def _no_null_bytes(record) -> bool:
    return not any(ord(c) == 0 for c in str(record["message"]))

def setup_logging():
    logger.remove()

    # Console logging with proper encoding and null byte filtering
    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        level=settings.LOG_LEVEL,
        backtrace=True,
        diagnose=settings.DEBUG,
        filter=_no_null_bytes,
    )

    # Rotating file log
    if settings.LOG_FILE:
        logger.add(
            settings.LOG_FILE,
            rotation="50 MB",
            retention="10 days",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
            level=settings.LOG_LEVEL,
            backtrace=True,
            diagnose=settings.DEBUG,
            encoding="utf-8",
            enqueue=True,
            filter=_no_null_bytes,
        )
    return logger
