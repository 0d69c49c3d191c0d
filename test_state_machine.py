import unittest
from unittest.mock import patch

import chess

from game_components.move_inference import InferenceResult
from game_components.occupancy import occupancy_from_board
from game_components.recommender import Recommendation
from game_components.state_machine import (
    BoardCorrected, Calibrated, CalibrationLost, DebounceState, GameOver, GameState,
    GameStateMachine, InvalidBoard, MoveApplied, NewGame, RecommendationReady,
    SettleAborted, SettleStarted, StartGame, StateChanged,
)

# 5 frames to reach the threshold, 2s settle at 0.1s per frame, plus slack
SETTLE_FRAMES = 30


class FakeRecommender:
    """Records requests; results are handed out by the test."""

    def __init__(self):
        self.requests = []
        self.ready = []
        self.invalidated = []

    def request(self, board, depth, session_id):
        self.requests.append((board.copy(), depth, session_id))

    def invalidate_before(self, session_id):
        self.invalidated.append(session_id)

    def poll(self, timeout=None):
        ready, self.ready = self.ready, []
        return ready


def grid_after(board, *ucis):
    copy = board.copy()
    for uci in ucis:
        copy.push_uci(uci)
    return occupancy_from_board(copy)


def of_type(events, cls):
    return [e for e in events if isinstance(e, cls)]


class TestGameStateMachine(unittest.TestCase):
    """Tests for debounce, move application and turn-taking."""

    def setUp(self):
        self.recommender = FakeRecommender()
        self.sm = GameStateMachine(recommender=self.recommender, stability_threshold=5,
                                   settle_delay=2.0, search_depth=10)
        self.start = occupancy_from_board(chess.Board())
        self.e4 = grid_after(chess.Board(), "e2e4")
        self.t = 0.0

    def begin(self, human=chess.WHITE):
        self.sm.submit(Calibrated())
        self.sm.submit(StartGame(human_color=human))
        return self.step(self.start)

    def step(self, grid, dt=0.1):
        self.t += dt
        return self.sm.update(grid, now=self.t)

    def feed(self, grid, frames, dt=0.1):
        events = []
        for _ in range(frames):
            events.extend(self.step(grid, dt))
        return events

    # =========================================================================
    # States
    # =========================================================================

    def test_starts_idle_and_ignores_frames(self):
        self.assertEqual(self.sm.state, GameState.IDLE)
        self.assertEqual(self.sm.update(self.e4, now=1.0), [])
        self.assertIsNone(self.sm.board)

    def test_start_when_calibrated_goes_to_playing(self):
        events = self.begin()
        self.assertEqual(of_type(events, StateChanged),
                         [StateChanged(GameState.IDLE, GameState.PLAYING)])
        self.assertEqual(self.sm.debounce, DebounceState.STABLE)

    def test_start_waits_for_calibration(self):
        self.sm.submit(StartGame())
        self.sm.update(None, now=0.0)
        self.assertEqual(self.sm.state, GameState.AWAITING_CALIBRATION)

        # frames are ignored until calibrated
        self.feed(self.e4, 30, dt=1.0)
        self.assertEqual(self.sm.board.fen(), chess.STARTING_FEN)

        self.sm.submit(Calibrated())
        self.step(self.start)
        self.assertEqual(self.sm.state, GameState.PLAYING)

    def test_calibration_lost_pauses_play(self):
        self.begin()
        self.feed(self.e4, 5)
        self.assertEqual(self.sm.debounce, DebounceState.SETTLING)

        self.sm.submit(CalibrationLost())
        events = self.step(self.e4)
        self.assertEqual(self.sm.state, GameState.AWAITING_CALIBRATION)
        self.assertEqual(len(of_type(events, SettleAborted)), 1)
        self.assertEqual(self.sm.debounce, DebounceState.STABLE)

        self.sm.submit(Calibrated())
        self.step(self.start)
        self.assertEqual(self.sm.state, GameState.PLAYING)

    # =========================================================================
    # Debounce
    # =========================================================================

    def test_unchanged_board_produces_nothing(self):
        self.begin()
        events = self.feed(self.start, 10, dt=1.0)
        self.assertEqual(events, [])
        self.assertEqual(self.sm.board.fen(), chess.STARTING_FEN)

    def test_needs_threshold_frames_and_full_settle(self):
        self.begin()
        events = self.feed(self.e4, 4)
        self.assertEqual(events, [])
        self.assertEqual(self.sm.debounce, DebounceState.PENDING)
        self.assertEqual(self.sm.pending.count, 4)

        events = self.step(self.e4)
        self.assertEqual(len(of_type(events, SettleStarted)), 1)
        self.assertEqual(self.sm.debounce, DebounceState.SETTLING)
        settle_start = self.t

        # just short of the settle delay
        events = self.sm.update(self.e4, now=settle_start + 1.99)
        self.assertEqual(of_type(events, MoveApplied), [])

        events = self.sm.update(self.e4, now=settle_start + 2.05)
        applied = of_type(events, MoveApplied)
        self.assertEqual(len(applied), 1)
        self.assertEqual(applied[0].move, chess.Move.from_uci("e2e4"))
        self.assertEqual(applied[0].san, "e4")
        self.assertTrue(applied[0].by_human)
        self.assertEqual(self.sm.board.fen(),
                         "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1")
        self.assertEqual(self.sm.debounce, DebounceState.STABLE)

    def test_differing_frame_while_pending_restarts_count(self):
        self.begin()
        self.feed(self.e4, 3)
        lifted = self.start.copy()
        lifted[6, 4] = False
        self.step(lifted)
        self.assertEqual(self.sm.pending.count, 1)
        self.feed(self.e4, 4)
        self.assertEqual(self.sm.debounce, DebounceState.PENDING)
        self.step(self.e4)
        self.assertEqual(self.sm.debounce, DebounceState.SETTLING)

    def test_change_during_settle_aborts_and_restarts_at_one(self):
        self.begin()
        self.feed(self.e4, 5)
        self.assertEqual(self.sm.debounce, DebounceState.SETTLING)

        e3 = grid_after(chess.Board(), "e2e3")
        events = self.step(e3, dt=1.0)
        self.assertEqual(len(of_type(events, SettleAborted)), 1)
        self.assertEqual(self.sm.debounce, DebounceState.PENDING)
        self.assertEqual(self.sm.pending.count, 1)

        # the long wait counts for nothing: e3 needs its own frames and delay
        events = self.feed(e3, 4, dt=1.0)
        self.assertEqual(len(of_type(events, SettleStarted)), 1)
        self.assertEqual(of_type(events, MoveApplied), [])
        events = self.feed(e3, 3, dt=1.0)
        self.assertEqual(of_type(events, MoveApplied)[0].san, "e3")

    def test_returning_to_expected_resets_debounce(self):
        self.begin()
        self.feed(self.e4, 5)
        events = self.step(self.start)
        self.assertEqual(len(of_type(events, SettleAborted)), 1)
        self.assertIsNone(self.sm.pending)

    def test_zero_settle_delay_applies_on_threshold_frame(self):
        sm = GameStateMachine(stability_threshold=3, settle_delay=0.0)
        sm.submit(Calibrated())
        sm.submit(StartGame())
        sm.update(self.start, now=0.0)
        self.assertEqual(sm.update(self.e4, now=0.1), [])
        self.assertEqual(sm.update(self.e4, now=0.2), [])
        events = sm.update(self.e4, now=0.3)
        self.assertEqual(len(of_type(events, MoveApplied)), 1)

    def test_uses_clock_when_no_timestamp(self):
        now = [0.0]
        sm = GameStateMachine(stability_threshold=1, settle_delay=1.0, clock=lambda: now[0])
        sm.submit(Calibrated())
        sm.submit(StartGame())
        sm.update(self.start)
        sm.update(self.e4)
        now[0] = 0.5
        self.assertEqual(of_type(sm.update(self.e4), MoveApplied), [])
        now[0] = 1.0
        self.assertEqual(len(of_type(sm.update(self.e4), MoveApplied)), 1)

    # =========================================================================
    # Invalid boards
    # =========================================================================

    def test_invalid_board_flag_and_correction(self):
        self.begin()
        lifted = self.start.copy()
        lifted[6, 4] = False  # e2 pawn removed, nowhere to be seen

        events = self.feed(lifted, SETTLE_FRAMES)
        invalid = of_type(events, InvalidBoard)
        self.assertEqual(len(invalid), 1)
        self.assertEqual(invalid[0].squares, [chess.E2])
        self.assertEqual(invalid[0].square_names, ["e2"])
        self.assertTrue(self.sm.invalid)
        self.assertEqual(self.sm.state, GameState.PLAYING)
        self.assertEqual(self.sm.board.fen(), chess.STARTING_FEN)

        # still invalid after further settle cycles, no duplicate event
        events = self.feed(lifted, 30)
        self.assertEqual(of_type(events, InvalidBoard), [])
        self.assertTrue(self.sm.invalid)

        events = self.step(self.start)
        self.assertEqual(len(of_type(events, BoardCorrected)), 1)
        self.assertFalse(self.sm.invalid)

    def test_invalid_flag_cleared_by_legal_move(self):
        self.begin()
        lifted = self.start.copy()
        lifted[6, 4] = False
        self.feed(lifted, SETTLE_FRAMES)
        self.assertTrue(self.sm.invalid)

        events = self.feed(self.e4, SETTLE_FRAMES)
        self.assertEqual(len(of_type(events, MoveApplied)), 1)
        self.assertFalse(self.sm.invalid)

    def test_rejected_move_is_discarded(self):
        self.begin()
        bogus = InferenceResult(move=chess.Move.from_uci("e2e5"),
                                candidates=[chess.Move.from_uci("e2e5")])
        with patch('game_components.state_machine.infer_move', return_value=bogus):
            events = self.feed(self.e4, SETTLE_FRAMES)
        self.assertEqual(of_type(events, MoveApplied), [])
        self.assertEqual(self.sm.board.fen(), chess.STARTING_FEN)
        self.assertEqual(self.sm.state, GameState.PLAYING)

    # =========================================================================
    # Game end and recommendations
    # =========================================================================

    def play(self, *ucis):
        board = self.sm.board.copy()
        events = []
        for uci in ucis:
            board.push_uci(uci)
            events += self.feed(occupancy_from_board(board), SETTLE_FRAMES)
        return events

    def test_game_over(self):
        self.begin()
        events = self.play("f2f3", "e7e5", "g2g4", "d8h4")
        applied = of_type(events, MoveApplied)
        self.assertEqual(len(applied), 4)
        self.assertIsNone(applied[0].checked_king)
        self.assertEqual(applied[-1].checked_king, chess.E1)
        over = of_type(events, GameOver)
        self.assertEqual(len(over), 1)
        self.assertEqual(over[0].outcome, "Black wins (checkmate)")
        self.assertEqual(self.sm.state, GameState.GAME_OVER)

        # frames after the end change nothing
        self.assertEqual(self.feed(self.start, 30), [])

    def test_engine_queried_after_human_move(self):
        self.begin()
        self.assertEqual(self.recommender.requests, [])
        self.play("e2e4")
        self.assertEqual(len(self.recommender.requests), 1)
        board, depth, session_id = self.recommender.requests[0]
        self.assertEqual(board.fen(), self.sm.board.fen())
        self.assertEqual(depth, 10)
        self.assertEqual(session_id, self.sm.session.session_id)

        # engine side's move does not trigger a query
        self.play("e7e5")
        self.assertEqual(len(self.recommender.requests), 1)

    def test_human_black_queries_first_move(self):
        self.begin(human=chess.BLACK)
        self.assertEqual(len(self.recommender.requests), 1)
        board, _, _ = self.recommender.requests[0]
        self.assertEqual(board.fen(), chess.STARTING_FEN)

        self.recommender.ready.append(Recommendation(
            session_id=self.sm.session.session_id, ply=0, fen=chess.STARTING_FEN,
            move=chess.Move.from_uci("d2d4"), san="d4"))
        events = self.step(self.start)
        ready = of_type(events, RecommendationReady)
        self.assertEqual(len(ready), 1)
        self.assertEqual(ready[0].san, "d4")
        self.assertEqual(self.sm.recommendation, ready[0])

        # recommendation is cleared once the move is on the board
        events = self.play("d2d4")
        self.assertFalse(of_type(events, MoveApplied)[0].by_human)
        self.assertIsNone(self.sm.recommendation)

    def test_stale_recommendation_discarded_after_new_game(self):
        self.begin(human=chess.BLACK)
        old_session = self.sm.session.session_id

        self.sm.submit(NewGame())
        self.step(self.start)
        self.assertEqual(self.sm.session.session_id, old_session + 1)
        self.assertEqual(self.sm.session.human_color, chess.BLACK)
        self.assertIn(old_session + 1, self.recommender.invalidated)

        self.recommender.ready.append(Recommendation(
            session_id=old_session, ply=0, fen=chess.STARTING_FEN,
            move=chess.Move.from_uci("e2e4"), san="e4"))
        events = self.step(self.start)
        self.assertEqual(of_type(events, RecommendationReady), [])
        self.assertIsNone(self.sm.recommendation)

    def test_recommendation_for_old_ply_discarded(self):
        self.begin()
        self.play("e2e4")
        self.recommender.ready.append(Recommendation(
            session_id=self.sm.session.session_id, ply=0, fen=chess.STARTING_FEN,
            move=chess.Move.from_uci("d2d4"), san="d4"))
        self.assertEqual(of_type(self.step(self.e4), RecommendationReady), [])

    def test_recommendation_without_move_ignored(self):
        self.begin(human=chess.BLACK)
        self.recommender.ready.append(Recommendation(
            session_id=self.sm.session.session_id, ply=0, fen=chess.STARTING_FEN,
            error="engine unavailable"))
        self.assertEqual(of_type(self.step(self.start), RecommendationReady), [])

    def test_no_recommender(self):
        sm = GameStateMachine(recommender=None, stability_threshold=1, settle_delay=0.0)
        sm.submit(Calibrated())
        sm.submit(StartGame(human_color=chess.BLACK))
        sm.update(self.start, now=0.0)
        events = sm.update(self.e4, now=0.1)
        self.assertEqual(len(of_type(events, MoveApplied)), 1)


if __name__ == '__main__':
    unittest.main()
