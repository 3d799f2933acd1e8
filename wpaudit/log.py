"""
Logging setup.

- Console: coloured level names, INFO+ (DEBUG+ when verbose).
- File (optional): DEBUG+, rotating, rich format.
- A short run id ties together the lines of one process and its children.
"""
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from typing import Optional

from colorama import Fore, Style, init

_RUN_ID = ""

LEVEL_COLORS = {
    logging.DEBUG: Style.DIM,
    logging.INFO: Fore.CYAN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.RED + Style.BRIGHT,
}


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno, "")
        message = super().format(record)
        return f"{color}{message}{Style.RESET_ALL}"


def init_logging(verbose: bool = False, log_file: Optional[str] = None, rid: Optional[str] = None) -> str:
    """Configure the root logger once. Returns the run id in use."""
    global _RUN_ID
    if _RUN_ID:
        return _RUN_ID

    init(autoreset=True)
    _RUN_ID = rid or os.environ.get("WPAUDIT_RID") or uuid.uuid4().hex[:8]
    os.environ["WPAUDIT_RID"] = _RUN_ID

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(ColorFormatter(f"[%(levelname)s] [{_RUN_ID}] %(message)s"))
    root.addHandler(console)

    if log_file:
        directory = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(directory, exist_ok=True)
        fh = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        ))
        root.addHandler(fh)

    # paramiko is chatty at DEBUG
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.debug("Logging initialized. run_id=%s file=%s", _RUN_ID, log_file)
    return _RUN_ID
