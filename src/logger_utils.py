import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
ERROR_LOG_BACKUPS = 5
COMBINED_LOG_BACKUPS = 7

class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to log levels"""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',    # cyan
        'INFO': '\033[32m',     # green
        'WARNING': '\033[33m',  # yellow
        'ERROR': '\033[31m',    # red
        'CRITICAL': '\033[35m', # magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'

    def __init__(self, use_colors=True, show_component=False):
        super().__init__()
        self.use_colors = use_colors and self._supports_color()
        self.show_component = show_component

    def _supports_color(self):
        """Check if terminal supports colors"""
        return (
            hasattr(sys.stderr, "isatty") and sys.stderr.isatty() and
            os.environ.get('TERM') != 'dumb' and
            os.environ.get('NO_COLOR') is None
        )

    def format(self, record):
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        component = f"[{record.name}] " if self.show_component else ""

        if not self.use_colors:
            return f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} - {record.levelname} - {component}{message}"

        level_color = self.COLORS.get(record.levelname, '')
        level_name = f"{level_color}{self.BOLD}{record.levelname:<8}{self.RESET}"
        # subdued timestamp and component
        timestamp = f"\033[90m{self.formatTime(record, '%H:%M:%S')}{self.RESET}"
        if component:
            component = f"\033[90m{component}{self.RESET}"
        return f"{timestamp} {level_name} {component}{message}"

def _file_handler(path: Path, level: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    return handler

# configure colored logging
def setup_logging(verbose=False, no_color=False, log_dir: Optional[str] = None):
    """Setup logging with colors and appropriate level

    When log_dir is given, errors also go to error.log and everything to
    combined.log inside it (both rotated at 10MB).
    """
    logger = logging.getLogger()

    # remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    # create console handler with colored formatter
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_colors=not no_color, show_component=verbose))

    # set level
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    console_handler.setLevel(level)

    logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        logger.addHandler(_file_handler(log_path / 'error.log', logging.ERROR, ERROR_LOG_BACKUPS))
        logger.addHandler(_file_handler(log_path / 'combined.log', level, COMBINED_LOG_BACKUPS))

    # web3/urllib3 debug output drowns the keeper's own lines
    for noisy in ('web3', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
