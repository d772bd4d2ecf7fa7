"""Simple logging configuration for treasury-settler."""

import logging
import sys

# Define TRACE level (lower than DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_NOISY_LOGGERS = ("web3", "urllib3", "aiohttp")


class ColoredFormatter(logging.Formatter):
    """Colored log formatter using ANSI escape codes."""

    # ANSI color codes
    COLORS = {
        "TRACE": "\033[90m",  # Dark gray
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = (
                f"{self.COLORS[levelname]}{self.BOLD}{levelname}{self.RESET}"
            )

        result = super().format(record)

        record.levelname = levelname

        return result


def resolve_level(log_level: str) -> int:
    """Map a level name (including TRACE) to its numeric value, defaulting to INFO."""
    name = log_level.upper()
    if name == "TRACE":
        return TRACE
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(log_level: str = "INFO") -> None:
    """Configure logging for the application.

    Sets up a simple console handler with formatted output and colors.

    When the level is DEBUG, web3/urllib3/aiohttp loggers are set to WARNING
    to reduce noise. Use TRACE to see every provider request.

    Args:
        log_level: Level name (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = resolve_level(log_level)

    handler = logging.StreamHandler(sys.stdout)
    formatter = ColoredFormatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,
    )

    if level == logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    elif level == TRACE:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(TRACE)
