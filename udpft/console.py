"""
Console presentation and operator log setup.

Operator-visible failures go through the standard ``logging`` module so the
server can append them to its log file; the ANSI helpers below only decorate
interactive output.
"""

import logging
import os
import sys
from typing import Optional


COLOR_ENABLED = os.environ.get("NO_COLOR") is None and sys.stdout.isatty()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LINE = "=" * 44

ANSI_RESET = "\x1b[0m"
ANSI_DIM = "\x1b[2m"
ANSI_BOLD = "\x1b[1m"
ANSI_RED = "\x1b[91m"
ANSI_GREEN = "\x1b[92m"
ANSI_YELLOW = "\x1b[93m"
ANSI_BLUE = "\x1b[94m"
ANSI_MAGENTA = "\x1b[95m"
ANSI_CYAN = "\x1b[96m"
ANSI_WHITE = "\x1b[97m"


# Applies optional ANSI styles when terminal coloring is enabled
def paint(text: str, *styles: str) -> str:
    if not COLOR_ENABLED or not styles:
        return text
    return "".join(styles) + text + ANSI_RESET


# Prints a section divider for easier scanning of grouped output
def section(title: str) -> None:
    print()
    print(paint(f"=== {title} ===", ANSI_CYAN))


# Configures console logging plus an append-only operator log file that only
# records failures
def configure_logging(level: str = "INFO", log_file: Optional[str] = None, file_level: str = "WARNING") -> None:
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(getattr(logging, file_level.upper(), logging.WARNING))
        handlers.append(file_handler)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def format_peer(addr) -> str:
    return f"{addr[0]}:{addr[1]}"
