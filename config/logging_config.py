"""Logging configuration for the FX trading core"""

import logging
import logging.handlers
from pathlib import Path

TRADES_LOGGER = 'trades'
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB

DETAILED_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# HTTP and event loop chatter from the quote polling
QUIET_LOGGERS = ('urllib3', 'requests', 'asyncio')


def _rotating_handler(path: Path, level: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=backup_count
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=DETAILED_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(log_level: str = "INFO", log_dir: str = "logs") -> None:
    """
    Configure logging for the application.

    Installs a console handler and three rotating files under log_dir:
    ``trading_core.log`` (everything), ``errors.log`` and ``trades.log``.
    The trades file is the audit trail of executions, closes and stop outs
    and only receives records from the ``trades`` logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory to store log files
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    root_logger.addHandler(_rotating_handler(log_path / "trading_core.log", logging.DEBUG, backup_count=5))
    root_logger.addHandler(_rotating_handler(log_path / "errors.log", logging.ERROR, backup_count=5))

    trades_logger = get_trades_logger()
    trades_logger.handlers.clear()
    trades_logger.addHandler(_rotating_handler(log_path / "trades.log", logging.INFO, backup_count=10))
    trades_logger.setLevel(logging.INFO)
    trades_logger.propagate = False

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"Logging configured with level {log_level}, files in {log_path.absolute()}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module (typically __name__)."""
    return logging.getLogger(name)


def get_trades_logger() -> logging.Logger:
    """
    Get the dedicated trades logger for audit trail.

    Returns:
        Trades logger instance
    """
    return logging.getLogger(TRADES_LOGGER)
