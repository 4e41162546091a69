"""
Logging configuration

One loguru logger for the whole service. ClickUp personal tokens are masked
in every record before any sink sees it.
"""
import re
import sys

from loguru import logger

from app.config import get_settings

settings = get_settings()

CLICKUP_TOKEN_PATTERN = re.compile(r"\bpk_[A-Za-z0-9_]{4,}")


def redact_tokens(message: str) -> str:
    """Keep only the last four characters of any ClickUp token."""
    return CLICKUP_TOKEN_PATTERN.sub(lambda m: f"pk_...{m.group(0)[-4:]}", message)


def _mask_credentials(record):
    record["message"] = redact_tokens(record["message"])


def setup_logger():
    logger.remove()
    logger.configure(patcher=_mask_credentials)

    logger.add(
        sys.stdout,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level
    )

    # Daily service log
    logger.add(
        f"{settings.log_dir}/central_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        level="INFO"
    )

    # Probe, alert and tick failures
    logger.add(
        f"{settings.log_dir}/errors_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="90 days",
        level="ERROR"
    )

    return logger


log = setup_logger()
