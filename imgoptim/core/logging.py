from __future__ import annotations

import logging
import logging.config

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str) -> None:
    normalized = level.upper().strip()
    if normalized not in logging.getLevelNamesMapping():
        raise ValueError(f"Unknown log level: {level}")

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": _LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "loggers": {
                "imgoptim": {"handlers": ["console"], "level": normalized, "propagate": False},
            },
        }
    )
