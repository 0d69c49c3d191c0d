#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Game state machine.

Turns the noisy per-frame occupancy grid into discrete, validated moves.

States:
    IDLE                  no game
    AWAITING_CALIBRATION  game started, board not yet calibrated
    PLAYING               comparing every frame against the expected grid
    GAME_OVER             terminal position reached

While PLAYING, a debounce sub-state decides when a change is real:
    STABLE    observed grid equals the expected grid
    PENDING   a differing grid has been seen `count` times in a row
    SETTLING  the differing grid reached the stability threshold; waiting
              `settle_delay` seconds for the hand to leave the board

Only update() mutates the machine. Other threads call submit() with an
intent, which is applied at the top of the next update().
"""

import time
from dataclasses import dataclass
from enum import Enum
from queue import Queue, Empty
from typing import Callable, List, Optional

import chess
import numpy as np

import common.constants as constants
from common.channel_logger import Logger
from common.errors import MoveApplicationError
from common.logging import get_logger
from game_components.move_inference import MoveTags, infer_move, move_tags
from game_components.occupancy import diff_squares, format_occupancy, square_names
from game_components.session import GameSession


class GameState(Enum):
    IDLE = "idle"
    AWAITING_CALIBRATION = "awaiting_calibration"
    PLAYING = "playing"
    GAME_OVER = "game_over"


class DebounceState(Enum):
    STABLE = "stable"
    PENDING = "pending"
    SETTLING = "settling"


# =============================================================================
# Intents (submitted from any thread)
# =============================================================================

@dataclass
class StartGame:
    human_color: chess.Color = chess.WHITE


@dataclass
class NewGame:
    """Restart with the same human colour."""


@dataclass
class Calibrated:
    pass


@dataclass
class CalibrationLost:
    pass


# =============================================================================
# Events (returned from update)
# =============================================================================

@dataclass
class StateChanged:
    old: GameState
    new: GameState


@dataclass
class SettleStarted:
    at: float


@dataclass
class SettleAborted:
    pass


@dataclass
class MoveApplied:
    move: chess.Move
    san: str
    fen: str
    tags: MoveTags
    by_human: bool
    ambiguous: bool = False
    checked_king: Optional[chess.Square] = None


@dataclass
class InvalidBoard:
    squares: List[chess.Square]

    @property
    def square_names(self) -> List[str]:
        return square_names(self.squares)


@dataclass
class BoardCorrected:
    pass


@dataclass
class GameOver:
    outcome: str


@dataclass
class RecommendationReady:
    move: chess.Move
    san: str
    session_id: int
    ply: int


@dataclass
class PendingDiff:
    observed: np.ndarray
    count: int
    first_seen: float
    settle_start: Optional[float] = None


class GameStateMachine:
    """
    Single owner of the game position.

    update() is called once per frame by the tracker thread; it returns the
    events produced during that frame.
    """

    def __init__(self, recommender=None,
                 stability_threshold: int = constants.STABILITY_THRESHOLD,
                 settle_delay: float = constants.SETTLE_DELAY,
                 search_depth: int = constants.DIFFICULTY * constants.DEPTH_PER_LEVEL,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            recommender: MoveRecommender (or anything with request/poll), or
                None to play without recommendations.
            stability_threshold: Identical differing frames needed before settling.
            settle_delay: Seconds to wait after the threshold before inferring.
            search_depth: Engine depth for recommendations.
            clock: Monotonic time source, used when update() gets no timestamp.
        """
        self.recommender = recommender
        self.stability_threshold = stability_threshold
        self.settle_delay = settle_delay
        self.search_depth = search_depth
        self.clock = clock

        self.state = GameState.IDLE
        self.session: Optional[GameSession] = None
        self.calibrated = False
        self.pending: Optional[PendingDiff] = None
        self.invalid_squares: List[chess.Square] = []
        self.recommendation: Optional[RecommendationReady] = None

        self._intents: Queue = Queue()
        self._session_counter = 0
        self._requested = None  # (session_id, ply) of the outstanding query
        self.log = Logger("game", "state")

    # =========================================================================
    # Public interface
    # =========================================================================

    def submit(self, intent) -> None:
        """Queue an intent; safe to call from any thread."""
        self._intents.put(intent)

    @property
    def debounce(self) -> DebounceState:
        if self.pending is None:
            return DebounceState.STABLE
        if self.pending.settle_start is None:
            return DebounceState.PENDING
        return DebounceState.SETTLING

    @property
    def invalid(self) -> bool:
        return bool(self.invalid_squares)

    @property
    def board(self) -> Optional[chess.Board]:
        return self.session.board if self.session else None

    def expected_occupancy(self) -> Optional[np.ndarray]:
        return self.session.expected_occupancy() if self.session else None

    def update(self, grid: Optional[np.ndarray], now: Optional[float] = None,
               brightness: Optional[np.ndarray] = None) -> list:
        """
        Advance the machine by one frame.

        Args:
            grid: Observed occupancy, or None when the board was not seen.
            now: Frame timestamp in seconds (monotonic); defaults to the clock.
            brightness: Optional per-square brightness for move disambiguation.

        Returns:
            Events produced this frame, in order.
        """
        if now is None:
            now = self.clock()
        events = []
        self._drain_intents(events)
        self._poll_recommendations(events)

        if self.state != GameState.PLAYING or grid is None:
            return events

        self._observe(np.asarray(grid, dtype=bool), now, brightness, events)
        return events

    # =========================================================================
    # Intents
    # =========================================================================

    def _drain_intents(self, events: list) -> None:
        while True:
            try:
                intent = self._intents.get_nowait()
            except Empty:
                return

            if isinstance(intent, StartGame):
                self._start_session(intent.human_color, events)
            elif isinstance(intent, NewGame):
                colour = self.session.human_color if self.session else chess.WHITE
                self._start_session(colour, events)
            elif isinstance(intent, Calibrated):
                self.calibrated = True
                if self.state == GameState.AWAITING_CALIBRATION:
                    self._enter_playing(events)
            elif isinstance(intent, CalibrationLost):
                self.calibrated = False
                if self.state == GameState.PLAYING:
                    self._reset_debounce(events)
                    self._transition(GameState.AWAITING_CALIBRATION, events)
            else:
                self.log.error(f"Ignoring unknown intent {intent!r}")

    def _start_session(self, human_color: chess.Color, events: list) -> None:
        if self.session is not None and self.state != GameState.GAME_OVER:
            session_logger = get_logger()
            if session_logger:
                session_logger.end_game("abandoned")

        self._session_counter += 1
        self.session = GameSession(human_color=human_color, session_id=self._session_counter)
        self.pending = None
        self.invalid_squares = []
        self.recommendation = None
        self._requested = None
        if self.recommender is not None and hasattr(self.recommender, "invalidate_before"):
            self.recommender.invalidate_before(self.session.session_id)

        side = chess.COLOR_NAMES[human_color].capitalize()
        session_logger = get_logger()
        if session_logger:
            session_logger.start_game({
                "session": self.session.session_id,
                "human": side,
                "engine": chess.COLOR_NAMES[self.session.engine_color].capitalize(),
            })
        self.log.info(f"Session {self.session.session_id} started, human plays {side}")

        if self.calibrated:
            self._enter_playing(events)
        else:
            self._transition(GameState.AWAITING_CALIBRATION, events)

    def _enter_playing(self, events: list) -> None:
        self._transition(GameState.PLAYING, events)
        if not self.session.is_human_turn():
            self._request_recommendation()

    def _transition(self, new_state: GameState, events: list) -> None:
        if new_state == self.state:
            return
        events.append(StateChanged(self.state, new_state))
        self.log.info(f"{self.state.name} -> {new_state.name}")
        self.state = new_state

    # =========================================================================
    # Recommendations
    # =========================================================================

    def _request_recommendation(self) -> None:
        if self.recommender is None or self.session is None:
            return
        key = (self.session.session_id, self.session.ply)
        if self._requested == key:
            return
        self._requested = key
        self.recommender.request(self.session.board, self.search_depth, self.session.session_id)

    def _poll_recommendations(self, events: list) -> None:
        if self.recommender is None:
            return
        for rec in self.recommender.poll():
            current = (self.session is not None
                       and rec.session_id == self.session.session_id
                       and rec.ply == self.session.ply)
            if not current:
                self.log.debug(f"Discarding stale recommendation (session {rec.session_id}, ply {rec.ply})")
                continue
            if rec.move is None:
                self.log.debug(f"No recommendation for ply {rec.ply}: {rec.error}")
                continue
            self.recommendation = RecommendationReady(rec.move, rec.san, rec.session_id, rec.ply)
            events.append(self.recommendation)

    # =========================================================================
    # Debounce
    # =========================================================================

    def _reset_debounce(self, events: list) -> None:
        if self.pending is not None and self.pending.settle_start is not None:
            events.append(SettleAborted())
        self.pending = None

    def _observe(self, grid: np.ndarray, now: float, brightness, events: list) -> None:
        expected = self.session.expected_occupancy()

        if np.array_equal(grid, expected):
            self._reset_debounce(events)
            if self.invalid_squares:
                self.invalid_squares = []
                events.append(BoardCorrected())
                self.log.info("Board matches the position again")
            return

        if self.pending is not None and np.array_equal(self.pending.observed, grid):
            self.pending.count += 1
        else:
            self._reset_debounce(events)
            self.pending = PendingDiff(observed=grid.copy(), count=1, first_seen=now)

        if self.pending.settle_start is None:
            if self.pending.count < self.stability_threshold:
                return
            self.pending.settle_start = now
            events.append(SettleStarted(now))
            self.log.debug(f"Change stable for {self.pending.count} frames, settling")

        if now - self.pending.settle_start >= self.settle_delay:
            self._resolve(grid, expected, brightness, now, events)

    def _resolve(self, grid: np.ndarray, expected: np.ndarray, brightness,
                 now: float, events: list) -> None:
        session = self.session
        result = infer_move(session.board, grid, brightness)

        if not result.matched:
            squares = diff_squares(expected, grid)
            if squares != self.invalid_squares:
                self.invalid_squares = squares
                events.append(InvalidBoard(squares))
                self.log.warn(f"No legal move matches the board; differing squares "
                              f"{square_names(squares)}\n{format_occupancy(grid)}")
            # Try again after another settle period if nothing changes
            self.pending.settle_start = now
            return

        move = result.move
        by_human = session.is_human_turn()
        tags = move_tags(session.board, move)
        try:
            san = session.apply_move(move)
        except MoveApplicationError as e:
            self.log.error(f"{e}; move discarded")
            self.pending = None
            return

        self.pending = None
        self.invalid_squares = []
        self.recommendation = None
        events.append(MoveApplied(move=move, san=san, fen=session.fen(), tags=tags,
                                  by_human=by_human, ambiguous=result.ambiguous,
                                  checked_king=session.checked_king_square()))
        self.log.info(f"Move {session.ply}: {san} ({move.uci()}) -> {session.fen()}")

        if session.is_over():
            outcome = session.outcome_string()
            self._transition(GameState.GAME_OVER, events)
            events.append(GameOver(outcome))
            self.log.info(f"Game over: {outcome}")
            session_logger = get_logger()
            if session_logger:
                session_logger.end_game(outcome)
        elif not session.is_human_turn():
            self._request_recommendation()
