"""
Move inference from occupancy.

Given the current position and an observed occupancy grid, find the legal
move that explains the change. The sensor only reports occupied/empty, so
every legal move is played out and its resulting occupancy compared with
what the camera sees.
"""

from dataclasses import dataclass, field
from statistics import median
from typing import Dict, List, Optional

import chess
import numpy as np

import common.constants as constants
from common.channel_logger import Logger
from game_components.occupancy import occupancy_after_move, row_col_from_square

_log = Logger("game", "inference")


@dataclass
class InferenceResult:
    """
    Outcome of infer_move.

    move is None when no legal move matches (the board is in an invalid
    state). ambiguous is set when several moves matched and the pick was a
    fallback rather than a decision.
    """
    move: Optional[chess.Move] = None
    candidates: List[chess.Move] = field(default_factory=list)
    ambiguous: bool = False

    @property
    def matched(self) -> bool:
        return self.move is not None


@dataclass
class MoveTags:
    capture: bool = False
    en_passant: bool = False
    castling: Optional[str] = None      # "kingside" / "queenside"
    promotion: Optional[str] = None     # piece symbol, e.g. "q"
    check: bool = False


def move_tags(board: chess.Board, move: chess.Move) -> MoveTags:
    """Describe a move in the position it is about to be played from."""
    castling = None
    if board.is_kingside_castling(move):
        castling = "kingside"
    elif board.is_queenside_castling(move):
        castling = "queenside"
    return MoveTags(
        capture=board.is_capture(move),
        en_passant=board.is_en_passant(move),
        castling=castling,
        promotion=chess.piece_symbol(move.promotion) if move.promotion else None,
        check=board.gives_check(move),
    )


def matching_moves(board: chess.Board, observed: np.ndarray) -> List[chess.Move]:
    """All legal moves whose resulting occupancy equals `observed`, in generation order."""
    observed = np.asarray(observed, dtype=bool)
    scratch = board.copy(stack=False)
    return [move for move in list(scratch.legal_moves)
            if np.array_equal(occupancy_after_move(scratch, move), observed)]


def _prefer_queen(candidates: List[chess.Move]) -> List[chess.Move]:
    """Drop under-promotions when a queen promotion (or a non-promotion) also fits."""
    preferred = [m for m in candidates if m.promotion in (None, chess.QUEEN)]
    return preferred or candidates


def _reference_brightness(board: chess.Board, brightness: np.ndarray,
                          excluded) -> Dict[chess.Color, float]:
    """Median brightness of each side's pieces on squares no candidate touches."""
    samples: Dict[chess.Color, List[float]] = {chess.WHITE: [], chess.BLACK: []}
    for square, piece in board.piece_map().items():
        if square in excluded:
            continue
        row, col = row_col_from_square(square)
        samples[piece.color].append(float(brightness[row, col]))
    return {colour: median(values) for colour, values in samples.items() if values}


def _resolve_by_brightness(board: chess.Board, candidates: List[chess.Move],
                           brightness: np.ndarray,
                           min_contrast: float) -> Optional[chess.Move]:
    """
    Pick the candidate whose predicted piece colours best fit the brightness.

    Only the destination squares differ between candidates with equal
    occupancy. Under each candidate the mover's colour sits on its own
    destination while the other destinations keep their current piece.
    """
    disputed = {m.to_square for m in candidates}
    excluded = disputed | {m.from_square for m in candidates}
    refs = _reference_brightness(board, brightness, excluded)
    if len(refs) < 2 or abs(refs[chess.WHITE] - refs[chess.BLACK]) < min_contrast:
        _log.debug(f"Brightness references unusable: {refs}")
        return None

    mover = board.turn
    scores = []
    for move in candidates:
        error = 0.0
        for square in disputed:
            if square == move.to_square:
                colour = mover
            else:
                piece = board.piece_at(square)
                if piece is None:
                    continue
                colour = piece.color
            row, col = row_col_from_square(square)
            error += abs(float(brightness[row, col]) - refs[colour])
        scores.append((error, move))

    scores.sort(key=lambda item: item[0])
    if len(scores) > 1 and scores[1][0] - scores[0][0] < 1e-6:
        return None
    return scores[0][1]


def infer_move(board: chess.Board, observed: np.ndarray,
               brightness: Optional[np.ndarray] = None,
               min_contrast: float = constants.MIN_BRIGHTNESS_CONTRAST) -> InferenceResult:
    """
    Find the legal move that turns the position's occupancy into `observed`.

    Args:
        board: Current position (not modified).
        observed: 8x8 bool occupancy grid seen by the camera.
        brightness: Optional 8x8 mean grey level per square, used to break
            ties between captures that leave identical occupancy.
        min_contrast: Minimum light/dark piece brightness gap for the tie-break.

    Returns:
        InferenceResult. No match gives move=None; several matches that
        cannot be separated give the first one with ambiguous=True.
    """
    candidates = matching_moves(board, observed)
    if not candidates:
        return InferenceResult()
    if len(candidates) == 1:
        return InferenceResult(move=candidates[0], candidates=candidates)

    narrowed = _prefer_queen(candidates)
    if len(narrowed) == 1:
        return InferenceResult(move=narrowed[0], candidates=candidates)

    if brightness is not None:
        chosen = _resolve_by_brightness(board, narrowed, np.asarray(brightness), min_contrast)
        if chosen is not None:
            _log.info(f"Resolved {len(narrowed)} candidates by brightness: {chosen.uci()}")
            return InferenceResult(move=chosen, candidates=candidates)

    _log.warn(f"Ambiguous move, candidates {[m.uci() for m in narrowed]}; "
              f"taking {narrowed[0].uci()}")
    return InferenceResult(move=narrowed[0], candidates=candidates, ambiguous=True)
