# -*- coding: utf-8 -*-
"""
Exceptions raised inside boardwatch.

Expected conditions (no frame, board not found, no matching move) are not
exceptions; they come back as None or as result objects. These classes are
for faults the caller has to log and recover from.
"""


class BoardwatchError(Exception):
    """Base class for boardwatch errors."""


class ConfigurationError(BoardwatchError):
    """A configuration value is missing or out of range."""


class MoveApplicationError(BoardwatchError):
    """The rules engine refused a move that inference reported as legal."""

    def __init__(self, move, fen: str):
        super().__init__(f"Move {move} rejected for position {fen}")
        self.move = move
        self.fen = fen
