#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Asynchronous move recommendations from a UCI engine.

The engine runs on a worker thread so a search never blocks the frame loop.
Requests go in through one queue and results come back through another,
tagged with the session id and ply they were computed for; the state
machine decides whether a result is still current.
"""

import threading
from dataclasses import dataclass
from queue import Queue, Empty
from typing import Callable, List, Optional

import chess
import chess.engine

from common.channel_logger import Logger
from common.constants import PATH_TO_STOCKFISH

STOP = "STOP"


@dataclass
class Recommendation:
    session_id: int
    ply: int
    fen: str
    move: Optional[chess.Move] = None
    san: Optional[str] = None
    error: Optional[str] = None


@dataclass
class _Request:
    board: chess.Board
    depth: int
    session_id: int


class MoveRecommender:
    """
    Worker thread owning one engine process.

    A missing or crashing engine is logged and turns into recommendations
    with move=None; nothing is raised into the caller.
    """

    def __init__(self, engine_path: str = PATH_TO_STOCKFISH,
                 engine_factory: Optional[Callable[[], object]] = None,
                 idle_timeout: float = 0.1):
        """
        Args:
            engine_path: UCI engine binary, used by the default factory.
            engine_factory: Callable returning an object with play() and quit().
                Defaults to chess.engine.SimpleEngine.popen_uci(engine_path).
            idle_timeout: How long the worker waits for a request before
                checking whether it should stop.
        """
        self.engine_path = engine_path
        self.engine_factory = engine_factory or (
            lambda: chess.engine.SimpleEngine.popen_uci(self.engine_path))
        self.idle_timeout = idle_timeout

        self._requests: Queue = Queue()
        self._results: Queue = Queue()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self._engine = None
        self._min_session_id = 0
        self.available: Optional[bool] = None  # unknown until the worker has tried
        self.log = Logger("game", "recommender")

    # =========================================================================
    # Control
    # =========================================================================

    def start(self) -> bool:
        """Start the worker thread. Returns False if it is already running."""
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._thread = threading.Thread(target=self._worker, name="recommender", daemon=True)
            self._thread.start()
            return True

    def is_running(self) -> bool:
        with self._thread_lock:
            return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker and quit the engine process."""
        with self._thread_lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._requests.put(STOP)
        thread.join(timeout)
        if thread.is_alive():
            self.log.warn(f"Recommender thread did not stop within {timeout}s")

    # =========================================================================
    # Requests and results
    # =========================================================================

    def request(self, board: chess.Board, depth: int, session_id: int) -> None:
        """Queue a search of `board` (copied) at `depth` plies."""
        if not self.is_running():
            self.start()
        self._requests.put(_Request(board=board.copy(), depth=depth, session_id=session_id))
        self.log.debug(f"Queued depth {depth} search for session {session_id}, ply {len(board.move_stack)}")

    def invalidate_before(self, session_id: int) -> None:
        """Skip queued requests belonging to sessions older than `session_id`."""
        self._min_session_id = session_id

    def poll(self, timeout: Optional[float] = None) -> List[Recommendation]:
        """
        Collect finished recommendations.

        Args:
            timeout: None returns immediately; otherwise wait up to this many
                seconds for the first result.
        """
        results = []
        if timeout is not None:
            try:
                results.append(self._results.get(timeout=timeout))
            except Empty:
                return results
        while True:
            try:
                results.append(self._results.get_nowait())
            except Empty:
                return results

    # =========================================================================
    # Worker
    # =========================================================================

    def _open_engine(self) -> None:
        try:
            self._engine = self.engine_factory()
            self.available = True
            self.log.info(f"Engine started ({self.engine_path})")
        except Exception as e:
            self._engine = None
            self.available = False
            self.log.warn(f"Engine unavailable at {self.engine_path}: {e}. "
                          f"Continuing without recommendations.")

    def _close_engine(self) -> None:
        if self._engine is None:
            return
        try:
            self._engine.quit()
        except (chess.engine.EngineError, chess.engine.EngineTerminatedError) as e:
            self.log.warn(f"Error quitting engine: {e}")
        self._engine = None

    def _worker(self) -> None:
        self._open_engine()
        while True:
            try:
                item = self._requests.get(timeout=self.idle_timeout)
            except Empty:
                continue
            if item == STOP:
                break
            if item.session_id < self._min_session_id:
                self.log.debug(f"Skipping request for superseded session {item.session_id}")
                continue
            self._results.put(self._search(item))
        self._close_engine()
        self.log.info("Recommender stopped")

    def _search(self, req: _Request) -> Recommendation:
        rec = Recommendation(session_id=req.session_id, ply=len(req.board.move_stack),
                             fen=req.board.fen())
        if self._engine is None:
            rec.error = "engine unavailable"
            return rec

        try:
            result = self._engine.play(req.board, chess.engine.Limit(depth=req.depth))
        except chess.engine.EngineTerminatedError as e:
            self.log.error(f"Engine terminated during search: {e}")
            self._engine = None
            self.available = False
            rec.error = str(e)
            return rec
        except chess.engine.EngineError as e:
            self.log.error(f"Engine search failed for {rec.fen}: {e}")
            rec.error = str(e)
            return rec

        if result.move is not None:
            rec.move = result.move
            rec.san = req.board.san(result.move)
            self.log.info(f"Recommendation for ply {rec.ply}: {rec.san} (depth {req.depth})")
        return rec
