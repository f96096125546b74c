"""Rich console logging for the API process"""

import logging

from rich.console import Console
from rich.logging import RichHandler

from api.core.config import Settings

# Third-party loggers that are too chatty at INFO
_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def setup_logging(settings: Settings) -> None:
    """Route all logging through one RichHandler on the root logger.

    Colors are forced outside production so they survive docker logs; in
    production rich falls back to plain text when stdout is not a TTY.
    """
    handler = RichHandler(
        console=Console(force_terminal=not settings.is_production, width=120),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        tracebacks_width=120,
        log_time_format="[%Y-%m-%d %H:%M:%S]",
    )

    # force=True replaces handlers uvicorn may already have installed
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging: {settings.log_level} | Env: {settings.environment}"
    )
