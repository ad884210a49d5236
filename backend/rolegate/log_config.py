import logging

from .config import Settings


def _resolve_log_level(value: str) -> int:
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: Settings) -> logging.Logger:
    """Set up root logging unless the host application already did."""
    log_level = _resolve_log_level(settings.log_level)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger = logging.getLogger("rolegate")
    logger.setLevel(log_level)
    if settings.debug:
        logger.warning("DEBUG=true, do not use in production")
    return logger
