"""
Component logger that routes messages to a SessionLogger channel.

Each component (localizer, sensor, state machine, recommender) owns one of
these with a context tag. Messages logged before init_logging() has been
called are kept in an in-memory buffer and written out with the first
message logged once a session exists.
"""

from typing import List, Optional, Tuple

from common.logging import get_logger, LogLevel

# Cap for messages held while no session exists
MAX_PENDING = 500


class Logger:
    """
    Per-component logger with one method per level.
    """

    def __init__(self, channel: str = "game", context: Optional[str] = None):
        """
        Args:
            channel: SessionLogger channel name ("vision" or "game")
            context: Tag printed with each message (e.g. "smoother")
        """
        self.channel = channel
        self._context = context
        self._pending: List[Tuple[LogLevel, str]] = []

    @property
    def pending(self) -> List[Tuple[LogLevel, str]]:
        """Messages recorded while no session logger was available."""
        return list(self._pending)

    def _emit(self, level: LogLevel, message: str) -> None:
        logger = get_logger()
        if logger is None:
            self._pending.append((level, message))
            if len(self._pending) > MAX_PENDING:
                del self._pending[0]
            return

        if self._pending:
            for old_level, old_message in self._pending:
                logger.log(self.channel, old_level, old_message, self._context)
            self._pending.clear()
        logger.log(self.channel, level, message, self._context)

    # =========================================================================
    # Direct logging at specific levels
    # =========================================================================

    def debug(self, message: str) -> None:
        self._emit(LogLevel.DEBUG, message)

    def perf(self, message: str) -> None:
        self._emit(LogLevel.PERF, message)

    def info(self, message: str) -> None:
        self._emit(LogLevel.INFO, message)

    def warn(self, message: str) -> None:
        self._emit(LogLevel.WARN, message)

    def error(self, message: str) -> None:
        self._emit(LogLevel.ERROR, message)
