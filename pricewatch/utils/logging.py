import logging
import os
import sys

from loguru import logger

# Stdlib loggers of HTTP libraries: httpx logs every Telegram request URL,
# and the bot token is part of that URL
NOISY_LOGGERS = ("httpx", "httpcore", "telegram.ext", "aiohttp.access")


def redact_filter(secret: str):
    """loguru filter replacing `secret` with *** in the message."""
    def _filter(record) -> bool:
        if secret and secret in record["message"]:
            record["message"] = record["message"].replace(secret, "***")
        return True
    return _filter


def setup_logging(level: str = "INFO", log_dir: str = None, secret: str = ""):
    """
    Configure logging:
    - stdout: for Docker logs
    - file: logs/pricewatch.log with rotation (10MB, 7 files, gzip)
    - HTTP library loggers capped at WARNING
    `secret` (the bot token) is masked in both sinks.
    """
    logger.remove()
    redact = redact_filter(secret)

    # Console output (Docker logs)
    logger.add(sys.stdout, level=level, filter=redact, backtrace=False, diagnose=False)

    # File output with rotation
    if log_dir is None:
        log_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs")
    os.makedirs(log_dir, exist_ok=True)

    log_file = os.path.join(log_dir, "pricewatch.log")
    logger.add(
        log_file,
        level=level,
        filter=redact,
        rotation="10 MB",
        retention=7,
        compression="gz",
        backtrace=True,
        diagnose=False,       # locals may hold the bot token
        enqueue=True          # thread-safe: evaluator workers log concurrently
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging configured: console + file ({log_file})")
    return logger
