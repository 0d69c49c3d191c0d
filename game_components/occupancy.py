"""
Occupancy grid helpers.

An occupancy grid is an 8x8 bool numpy array with row 0 = rank 8 (the far
side of the board) and col 0 = the a-file, matching the warped image.
"""

from typing import List, Tuple

import chess
import numpy as np


def square_from_row_col(row: int, col: int) -> chess.Square:
    return chess.square(col, 7 - row)


def row_col_from_square(square: chess.Square) -> Tuple[int, int]:
    return 7 - chess.square_rank(square), chess.square_file(square)


def occupancy_from_board(board: chess.Board) -> np.ndarray:
    """Expected occupancy grid for a position."""
    grid = np.zeros((8, 8), dtype=bool)
    for square in chess.SquareSet(board.occupied):
        row, col = row_col_from_square(square)
        grid[row, col] = True
    return grid


def occupancy_after_move(board: chess.Board, move: chess.Move) -> np.ndarray:
    """Occupancy grid the position would have after `move` (board is not mutated)."""
    board.push(move)
    try:
        return occupancy_from_board(board)
    finally:
        board.pop()


def diff_squares(expected: np.ndarray, observed: np.ndarray) -> List[chess.Square]:
    """Squares whose occupancy differs between two grids, in a1..h8 order."""
    rows, cols = np.nonzero(np.asarray(expected, dtype=bool) != np.asarray(observed, dtype=bool))
    return sorted(square_from_row_col(int(r), int(c)) for r, c in zip(rows, cols))


def square_names(squares) -> List[str]:
    return [chess.square_name(sq) for sq in squares]


def piece_grid(board: chess.Board) -> List[List[str]]:
    """8x8 grid of piece symbols ('' for empty), same orientation as occupancy."""
    grid = [['' for _ in range(8)] for _ in range(8)]
    for square, piece in board.piece_map().items():
        row, col = row_col_from_square(square)
        grid[row][col] = piece.symbol()
    return grid


def format_occupancy(grid: np.ndarray) -> str:
    """
    Render a grid as text for the logs.

        8 X X X X X X X X
        ...
        1 X X X X X X X X
          a b c d e f g h
    """
    lines = []
    for row in range(8):
        cells = " ".join("X" if grid[row][col] else "." for col in range(8))
        lines.append(f"{8 - row} {cells}")
    lines.append("  a b c d e f g h")
    return "\n".join(lines)
