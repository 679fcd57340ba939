"""Console logging for atomic_io.

Provides consistent logging behavior for the library and the CLI:
- Stderr for all messages, so stdout stays free for piped data
- Debug output only when verbose (``--verbose`` on the CLI)
- Colored output when stderr is a terminal
"""

import sys
import traceback
from typing import Any


class Logger:
    """Stderr logger used by the writer and the CLI.

    Attributes:
        verbose: If True, DEBUG messages are printed
        use_colors: If True, use ANSI color codes
    """

    def __init__(self, verbose: bool = False, use_colors: bool = True) -> None:
        self.verbose = verbose
        self.use_colors = use_colors and sys.stderr.isatty()

    def _colorize(self, text: str, color_code: str) -> str:
        if not self.use_colors:
            return text
        return f"\033[{color_code}m{text}\033[0m"

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message (only if verbose enabled).

        Args:
            message: Message to log
            **kwargs: Additional key-value pairs to include
        """
        if not self.verbose:
            return

        formatted = self._colorize(f"DEBUG: {message}", "36")  # Cyan
        if kwargs:
            details = " ".join(f"{k}={v!r}" for k, v in kwargs.items())
            formatted += f" ({details})"

        print(formatted, file=sys.stderr)

    def warning(self, message: str) -> None:
        print(self._colorize(f"Warning: {message}", "33"), file=sys.stderr)

    def error(self, message: str, suggestion: str | None = None) -> None:
        """Log error message with optional suggestion.

        Args:
            message: Error message to log
            suggestion: Optional suggestion for fixing the error
        """
        print(self._colorize(f"Error: {message}", "31"), file=sys.stderr)

        if suggestion:
            print(self._colorize(f"  -> {suggestion}", "33"), file=sys.stderr)

    def exception(
        self, message: str, exc: BaseException, suggestion: str | None = None
    ) -> None:
        """Log exception, with its traceback and notes in verbose mode."""
        self.error(f"{message}: {exc}", suggestion=suggestion)

        if self.verbose:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            print(self._colorize(tb, "90"), file=sys.stderr)  # Gray


# Module-global logger (configured by the CLI, defaulted for library use)
_logger: Logger | None = None


def init_logger(verbose: bool = False, use_colors: bool = True) -> Logger:
    """Initialize the global logger.

    Args:
        verbose: Enable debug output
        use_colors: Enable ANSI color codes

    Returns:
        Logger instance
    """
    global _logger
    _logger = Logger(verbose=verbose, use_colors=use_colors)
    return _logger


def get_logger() -> Logger:
    """Get the global logger, creating a quiet one if none was initialized."""
    global _logger
    if _logger is None:
        _logger = Logger(verbose=False, use_colors=False)
    return _logger
