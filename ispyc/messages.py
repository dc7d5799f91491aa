"""Print colorized warnings, diagnostics, and debug messages to the console."""
import sys

import colorama


colorama.init(autoreset=True)
WHITE = colorama.Fore.WHITE                 # default
YELLOW = colorama.Fore.LIGHTYELLOW_EX       # warnings/emphasis in messages
GREEN = colorama.Fore.LIGHTGREEN_EX         # fresh/reused artifacts
CYAN = colorama.Fore.LIGHTCYAN_EX           # paths and diagnostics
MAGENTA = colorama.Fore.LIGHTMAGENTA_EX     # debug (internal)


# pylint: disable=invalid-name, global-statement


_VERBOSE = False
_QUIET = False


def configure(*, verbose: bool | None = None, quiet: bool | None = None) -> None:
    """Adjust how much output is written to the console.

    Parameters
    ----------
    verbose : bool, optional
        If True, then `DEBUG()` messages will be printed.  Left unchanged if None.
    quiet : bool, optional
        If True, then `INFO()` messages will be suppressed.  Warnings are always
        printed.  Left unchanged if None.
    """
    global _VERBOSE, _QUIET
    if verbose is not None:
        _VERBOSE = verbose
    if quiet is not None:
        _QUIET = quiet


def DEBUG(message: str) -> None:
    """Print a debug message to the console if verbose output is enabled.

    Parameters
    ----------
    message : str
        The message to print to the console.
    """
    if _VERBOSE:
        print(f"{MAGENTA}DEBUG{WHITE}: {message}")


def INFO(message: str) -> None:
    """Print an informational message to the console and continue.

    Parameters
    ----------
    message : str
        The message to print to the console.
    """
    if not _QUIET:
        print(f"{CYAN}INFO{WHITE}: {message}")


def WARN(message: str) -> None:
    """Print a warning message to stderr and continue.

    Parameters
    ----------
    message : str
        The message to print to the console.
    """
    print(f"{YELLOW}WARNING{WHITE}: {message}", file=sys.stderr)

