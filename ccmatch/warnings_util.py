"""Utilities for displaying colored warnings and failure reports."""

import sys
import warnings
from typing import Optional

# ANSI color codes
YELLOW = '\033[93m'
RED = '\033[91m'
BOLD = '\033[1m'
RESET = '\033[0m'


def warn(message: str, category=UserWarning, stacklevel: int = 2) -> None:
    """
    Issue a warning with color formatting for better visibility.

    Parameters
    ----------
    message : str
        Warning message to display
    category : Warning
        Warning category (default: UserWarning)
    stacklevel : int
        Stack level for warning origin (default: 2)
    """
    # Issue the standard warning (for logging, filtering, etc.)
    warnings.warn(message, category, stacklevel=stacklevel + 1)

    # Also print a colored version to stderr if it's a TTY
    if sys.stderr.isatty():
        formatted_msg = f"{YELLOW}{BOLD}WARNING:{RESET} {YELLOW}{message}{RESET}"
        print(formatted_msg, file=sys.stderr)


def report_failure(
    error: BaseException,
    phase: str,
    stratum: Optional[str] = None,
    hint: Optional[str] = None,
) -> str:
    """
    Print a failure report for one phase of one stratum to stderr.

    The report is always printed (not only on a TTY) because the run carries
    on with the remaining strata and the failure would otherwise go unseen.

    Returns
    -------
    str
        The uncolored report text, for storing alongside the stratum result.
    """
    where = f"stratum {stratum!r}, " if stratum is not None else ""
    text = f"{where}{phase} failed: {type(error).__name__}: {error}"
    if hint:
        text = f"{text}\n  hint: {hint}"

    if sys.stderr.isatty():
        print(f"{RED}{BOLD}ERROR:{RESET} {RED}{text}{RESET}", file=sys.stderr)
    else:
        print(f"ERROR: {text}", file=sys.stderr)
    return text
