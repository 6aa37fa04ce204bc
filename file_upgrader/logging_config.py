import logging
import logging.handlers

from rich.console import Console
from rich.logging import RichHandler

from .config import Settings

FILE_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(filename)s:%(lineno)d - %(message)s"

# Libraries logging one line per HTTP request; APS polling would flood the log
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _console_handler(level: str) -> RichHandler:
    handler = RichHandler(
        console=Console(width=140),
        show_path=False,
        markup=True,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    return handler


def _rotating_file_handler(settings: Settings) -> logging.Handler:
    """Daily rotated log file, kept for log_retention_days."""
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=settings.log_file_path,
        when="midnight",
        backupCount=settings.log_retention_days,
        encoding="utf-8",
    )
    handler.setLevel(settings.log_level)
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
    return handler


def setup_logging(settings: Settings) -> None:
    settings.log_directory.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(_console_handler(settings.log_level))
    root_logger.addHandler(_rotating_file_handler(settings))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(
        f"[bold green]Logging klar[/] - fil: [cyan]{settings.log_file_path}[/], "
        f"niveau: [yellow]{settings.log_level}[/], opbevaring: {settings.log_retention_days} dage"
    )
