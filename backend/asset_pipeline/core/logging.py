"""
Process-wide logging setup.

Every module logs through logging.getLogger(__name__) with
pipe-delimited key=value messages; this only installs the root handler.
"""

from __future__ import annotations

import logging

from asset_pipeline.core.config import Settings, settings as default_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that are too chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3")


def configure_logging(settings: Settings | None = None) -> None:
    cfg = settings or default_settings
    level = logging.DEBUG if cfg.debug else getattr(logging, cfg.log_level.upper(), logging.INFO)

    logging.basicConfig(level=level, format=LOG_FORMAT)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
