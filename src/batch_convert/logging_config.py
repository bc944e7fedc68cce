"""Logging configuration for the batch conversion service."""

import sys

from loguru import logger

from .config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure loguru: console always, rotating files when LOG_DIR is set."""
    logger.remove()

    logger.add(
        sink=sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.log_level,
        colorize=True,
    )

    if settings.log_dir is None:
        logger.info("Logging configured: console output only")
        return

    settings.log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        sink=settings.log_dir / "batch_convert_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level=settings.log_level,
        rotation="00:00",
        retention="14 days",
        compression="zip",
        enqueue=True,
    )

    logger.add(
        sink=settings.log_dir / "batch_convert_errors_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="ERROR",
        rotation="00:00",
        retention="60 days",
        compression="zip",
        enqueue=True,
    )

    logger.info("Logging configured: console + file output in {}", settings.log_dir)
