#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Session logging for boardwatch.

One session directory per run, one buffered channel per subsystem:
- vision: frame reads, board localisation, occupancy scans
- game:   debounce decisions, inferred moves, engine recommendations

Directory structure:
    logs/
    ├── sessions/
    │   └── YYYY-MM-DD_HH-MM-SS/
    │       ├── vision.log
    │       ├── game.log
    │       ├── session_info.txt
    │       └── errors/
    └── latest -> sessions/YYYY-MM-DD_HH-MM-SS/
"""

import os
import time
import shutil
import threading
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Optional, Dict, Any, List

from common.constants import LOG_DIRECTORY


class LogLevel(IntEnum):
    """Log levels in order of verbosity (lower = more verbose)."""
    DEBUG = 0    # Per-frame detail
    PERF = 1     # Timing of pipeline stages
    INFO = 2     # Moves, state changes
    WARN = 3     # Recoverable problems (invalid board, engine missing)
    ERROR = 4    # Logic faults
    CRITICAL = 5


LEVEL_NAMES = {
    LogLevel.DEBUG: "DEBUG",
    LogLevel.PERF: "PERF ",
    LogLevel.INFO: "INFO ",
    LogLevel.WARN: "WARN ",
    LogLevel.ERROR: "ERROR",
    LogLevel.CRITICAL: "CRIT ",
}

LEVEL_COLOURS = {
    LogLevel.DEBUG: "\033[90m",    # Grey
    LogLevel.PERF: "\033[36m",     # Cyan
    LogLevel.INFO: "\033[0m",      # Default
    LogLevel.WARN: "\033[33m",     # Yellow
    LogLevel.ERROR: "\033[31m",    # Red
    LogLevel.CRITICAL: "\033[91m", # Bright red
}
RESET_COLOUR = "\033[0m"


class LogChannel:
    """
    A single log file with list-based buffering.

    The vision channel is written to on every frame, so messages are
    collected in memory and written in batches.
    """

    def __init__(self, filepath: Path, min_level: LogLevel = LogLevel.INFO,
                 buffer_size: int = 50, auto_flush: bool = True):
        self.filepath = filepath
        self.min_level = min_level
        self.buffer_size = buffer_size
        self.auto_flush = auto_flush

        self._buffer: List[str] = []
        self._lock = threading.Lock()
        self._start_time = time.time()

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        self._write_header()

    def _write_header(self) -> None:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        header = [
            "=" * 80,
            f"  Log started: {timestamp}",
            f"  Channel: {self.filepath.stem}",
            f"  Min level: {LEVEL_NAMES[self.min_level]}",
            "=" * 80,
            "",
        ]
        with open(self.filepath, 'w') as f:
            f.write('\n'.join(header) + '\n')

    def log(self, level: LogLevel, message: str, context: Optional[str] = None) -> None:
        """
        Add a message to the buffer.

        Args:
            level: Log level
            message: The message to log
            context: Optional component tag (e.g. "localizer")
        """
        if level < self.min_level:
            return

        elapsed = time.time() - self._start_time
        prefix = f"[{elapsed:8.3f}s] [{LEVEL_NAMES[level]}]"
        if context:
            formatted = f"{prefix} [{context}] {message}"
        else:
            formatted = f"{prefix} {message}"

        with self._lock:
            self._buffer.append(formatted)
            if self.auto_flush and len(self._buffer) >= self.buffer_size:
                self._flush_unlocked()

    def _flush_unlocked(self) -> None:
        """Flush buffer to disk (must hold lock)."""
        if not self._buffer:
            return
        try:
            with open(self.filepath, 'a') as f:
                f.write('\n'.join(self._buffer) + '\n')
            self._buffer.clear()
        except IOError as e:
            print(f"Error writing to log file {self.filepath}: {e}")

    def flush(self) -> None:
        with self._lock:
            self._flush_unlocked()

    def close(self) -> None:
        """Flush and write the footer."""
        self.flush()
        elapsed = time.time() - self._start_time
        footer = [
            "",
            "=" * 80,
            f"  Log ended: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"  Session duration: {elapsed:.1f}s",
            "=" * 80,
        ]
        try:
            with open(self.filepath, 'a') as f:
                f.write('\n'.join(footer) + '\n')
        except IOError as e:
            print(f"Error closing log file {self.filepath}: {e}")


class SessionLogger:
    """
    Session-based logger shared by the tracker, the vision components and
    the game components.
    """

    _instance: Optional['SessionLogger'] = None
    _lock = threading.Lock()

    def __init__(self, base_dir: Optional[Path] = None,
                 vision_level: LogLevel = LogLevel.INFO,
                 game_level: LogLevel = LogLevel.INFO,
                 console_output: bool = False):
        """
        Args:
            base_dir: Base directory for logs (default: ./logs)
            vision_level: Minimum level recorded on the vision channel
            game_level: Minimum level recorded on the game channel
            console_output: Whether to also print to console
        """
        if base_dir is None:
            base_dir = Path(os.getcwd()) / LOG_DIRECTORY

        self.base_dir = Path(base_dir)
        self.console_output = console_output

        self.session_id = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        self.session_dir = self.base_dir / "sessions" / self.session_id
        self.errors_dir = self.session_dir / "errors"
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self.errors_dir.mkdir(parents=True, exist_ok=True)

        self._channels: Dict[str, LogChannel] = {
            # frame-rate logging, larger batches
            "vision": LogChannel(self.session_dir / "vision.log",
                                 min_level=vision_level, buffer_size=100),
            "game": LogChannel(self.session_dir / "game.log",
                               min_level=game_level, buffer_size=20),
        }

        self._update_latest_symlink()
        self._write_session_info()
        self._game_count = 0

    def _update_latest_symlink(self) -> None:
        latest_link = self.base_dir / "latest"
        try:
            if latest_link.is_symlink():
                latest_link.unlink()
            elif latest_link.exists():
                shutil.rmtree(latest_link)
            latest_link.symlink_to(self.session_dir, target_is_directory=True)
        except OSError:
            pass  # Symlinks may not work on all platforms

    def _write_session_info(self) -> None:
        info = [
            f"Session ID: {self.session_id}",
            f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Working Directory: {os.getcwd()}",
            "",
        ]
        with open(self.session_dir / "session_info.txt", 'w') as f:
            f.write('\n'.join(info))

    @classmethod
    def get_instance(cls) -> Optional['SessionLogger']:
        return cls._instance

    @classmethod
    def initialise(cls, **kwargs) -> 'SessionLogger':
        """Create (or replace) the global SessionLogger."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = cls(**kwargs)
            return cls._instance

    @classmethod
    def shutdown(cls) -> None:
        """Close and forget the global SessionLogger."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    # =========================================================================
    # Channel logging
    # =========================================================================

    def log(self, channel: str, level: LogLevel, message: str,
            context: Optional[str] = None) -> None:
        """Log a message to the named channel."""
        target = self._channels.get(channel)
        if target is None:
            raise ValueError(f"Unknown log channel: {channel}")
        target.log(level, message, context)
        # vision is noisy at INFO, only surface its warnings
        console_min = LogLevel.WARN if channel == "vision" else LogLevel.INFO
        if self.console_output and level >= console_min:
            self._print_coloured(level, message, channel.upper(), context)

    # =========================================================================
    # Error files
    # =========================================================================

    def save_error_image(self, prefix: str, image) -> Optional[Path]:
        """
        Save an image (e.g. the warped board at an invalid move) next to the logs.

        Args:
            prefix: Descriptive prefix for the file
            image: OpenCV image (numpy array)

        Returns:
            Path to the saved file, or None if the image could not be written.
        """
        import cv2
        import numpy as np

        if image is None or not isinstance(image, np.ndarray):
            return None

        timestamp = datetime.now().strftime("%H-%M-%S_%f")[:-3]
        filepath = self.errors_dir / f"{prefix}_{timestamp}.png"
        if not cv2.imwrite(str(filepath), image):
            self.log("game", LogLevel.ERROR, f"Failed to save error image {filepath}")
            return None
        return filepath

    def save_error_context(self, prefix: str, context: Dict[str, Any]) -> Path:
        """Save key/value context for an error as a text file."""
        timestamp = datetime.now().strftime("%H-%M-%S_%f")[:-3]
        filepath = self.errors_dir / f"{prefix}_{timestamp}_context.txt"

        lines = [f"Error Context: {prefix}", "=" * 60, ""]
        for key, value in context.items():
            lines.append(f"{key}: {value}")
        lines.append("")

        with open(filepath, 'w') as f:
            f.write('\n'.join(lines))
        return filepath

    # =========================================================================
    # Game separators
    # =========================================================================

    def start_game(self, game_info: Optional[Dict[str, Any]] = None) -> None:
        """Write a visual separator marking a new game on both channels."""
        self._game_count += 1
        separator = "═" * 70
        header = ["", separator, f"  GAME {self._game_count} STARTED"]
        for key, value in (game_info or {}).items():
            header.append(f"  {key}: {value}")
        header.extend([f"  Time: {datetime.now().strftime('%H:%M:%S')}", separator, ""])

        text = '\n'.join(header)
        for channel in self._channels.values():
            channel.log(LogLevel.INFO, text)

    def end_game(self, result: Optional[str] = None) -> None:
        """Write a separator marking the end of a game, then flush."""
        separator = "─" * 70
        footer = ["", separator, f"  GAME {self._game_count} ENDED"]
        if result:
            footer.append(f"  Result: {result}")
        footer.extend([f"  Time: {datetime.now().strftime('%H:%M:%S')}", separator, ""])

        text = '\n'.join(footer)
        for channel in self._channels.values():
            channel.log(LogLevel.INFO, text)
        self.flush()

    def _print_coloured(self, level: LogLevel, message: str,
                        channel: str, context: Optional[str]) -> None:
        colour = LEVEL_COLOURS.get(level, "")
        tag = f"[{channel}] [{LEVEL_NAMES[level]}]"
        if context:
            tag += f" [{context}]"
        print(f"{colour}{tag} {message}{RESET_COLOUR}")

    def flush(self) -> None:
        for channel in self._channels.values():
            channel.flush()

    def close(self) -> None:
        for channel in self._channels.values():
            channel.close()
        try:
            with open(self.session_dir / "session_info.txt", 'a') as f:
                f.write(f"Ended: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
                f.write(f"Games played: {self._game_count}\n")
        except IOError as e:
            print(f"Error finalising session info: {e}")


# =============================================================================
# Global access
# =============================================================================

def get_logger() -> Optional[SessionLogger]:
    """Get the global SessionLogger instance (None until init_logging)."""
    return SessionLogger.get_instance()


def init_logging(vision_level: LogLevel = LogLevel.INFO,
                 game_level: LogLevel = LogLevel.INFO,
                 console_output: bool = False,
                 base_dir: Optional[Path] = None) -> SessionLogger:
    """
    Initialise the global logging system.

    Should be called once at application startup (main.py). Components that
    log before this call keep their messages in memory.
    """
    return SessionLogger.initialise(
        base_dir=base_dir,
        vision_level=vision_level,
        game_level=game_level,
        console_output=console_output
    )
