#!/usr/bin/env python3
"""piwo.logging_config

Logging setup for the CLI: one rich console handler on the `piwo` logger.
"""

from logging.config import dictConfig


def configure_logging(verbose: bool = False) -> None:
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {
                    "class": "logging.Formatter",
                    "datefmt": "%Y:%m:%dT%H:%M:%S",
                    "style": "{",
                    "format": "{name}:{lineno:d} - {message}",
                },
            },
            "handlers": {
                "default": {
                    "class": "rich.logging.RichHandler",
                    "level": "DEBUG",
                    "formatter": "console",
                },
            },
            "loggers": {
                "piwo": {
                    "handlers": ["default"],
                    "level": "DEBUG" if verbose else "INFO",
                    "propagate": False,
                },
                "googleapiclient": {"handlers": ["default"], "level": "WARNING"},
                "rasterio": {"handlers": ["default"], "level": "WARNING"},
            },
        }
    )
