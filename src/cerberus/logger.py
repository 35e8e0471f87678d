import logging

import notifiers.logging
import sanic.log

from cerberus import config

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s - %(message)s"

logger = logging.getLogger("cerberus")


def get_log_handlers(target: logging.Logger) -> list[logging.Handler]:
    if config.TELEGRAM_TOKEN is None:
        return []
    handler = notifiers.logging.NotificationHandler(
        "telegram",
        defaults={
            "token": config.TELEGRAM_TOKEN,
            "chat_id": config.TELEGRAM_CHAT_ID,
        },
    )
    handler.setLevel(logging.WARNING)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    target.addHandler(handler)
    return [handler]


def configure_logging(level=None) -> None:
    """Set up the root format and apply the level to our and Sanic's loggers.

    Warnings and above are additionally forwarded to Telegram when a token is
    configured.
    """
    if level is None:
        level = config.OVERRIDE_LOGGING
    logging.basicConfig(format=LOG_FORMAT, level=logging.INFO)
    logging.getLogger().setLevel(level)
    logger.setLevel(level)
    sanic.log.logger.setLevel(level)
    for target in (logger, sanic.log.logger):
        if not any(
            isinstance(h, notifiers.logging.NotificationHandler)
            for h in target.handlers
        ):
            get_log_handlers(target)
