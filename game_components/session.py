import chess

from common.errors import MoveApplicationError
from game_components.occupancy import occupancy_from_board

OUTCOME_IN_PROGRESS = "In progress"


class GameSession:
    """
    One game: the position, which side the human plays, and a session id.

    The session id is assigned by the state machine and grows by one for
    every new game, so anything computed for an older game can be told apart.
    """

    def __init__(self, human_color: chess.Color = chess.WHITE, session_id: int = 0,
                 initial_fen: str = chess.STARTING_FEN):
        self.board = chess.Board(initial_fen)
        self.human_color = human_color
        self.session_id = session_id
        self.last_move = None
        self.last_san = None

    @property
    def engine_color(self) -> chess.Color:
        return not self.human_color

    @property
    def ply(self) -> int:
        return len(self.board.move_stack)

    def is_human_turn(self) -> bool:
        return self.board.turn == self.human_color

    def fen(self) -> str:
        return self.board.fen()

    def expected_occupancy(self):
        return occupancy_from_board(self.board)

    def outcome(self):
        """chess.Outcome of the game, or None while in progress."""
        return self.board.outcome(claim_draw=False)

    def is_over(self) -> bool:
        return self.outcome() is not None

    def outcome_string(self) -> str:
        """Human readable result, e.g. "White wins (checkmate)"."""
        outcome = self.outcome()
        if outcome is None:
            return OUTCOME_IN_PROGRESS
        reason = outcome.termination.name.lower().replace("_", " ")
        if outcome.winner is None:
            return f"Draw ({reason})"
        winner = "White" if outcome.winner == chess.WHITE else "Black"
        return f"{winner} wins ({reason})"

    def checked_king_square(self):
        """Square of the king in check, or None."""
        if not self.board.is_check():
            return None
        return self.board.king(self.board.turn)

    def apply_move(self, move: chess.Move) -> str:
        """
        Play a move on the position.

        Returns:
            The move in SAN.

        Raises:
            MoveApplicationError: the move is not legal here.
        """
        if not self.board.is_legal(move):
            raise MoveApplicationError(move, self.board.fen())
        san = self.board.san(move)
        self.board.push(move)
        self.last_move = move
        self.last_san = san
        return san
