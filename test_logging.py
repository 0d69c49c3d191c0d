import shutil
import tempfile
import unittest
from pathlib import Path

import numpy as np

from common.channel_logger import MAX_PENDING, Logger
from common.logging import LogLevel, SessionLogger, get_logger, init_logging


class TestSessionLogging(unittest.TestCase):
    """Tests for session directories, channels and the component logger."""

    def setUp(self):
        SessionLogger.shutdown()
        self.base_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        SessionLogger.shutdown()
        shutil.rmtree(self.base_dir, ignore_errors=True)

    def read(self, channel):
        return (get_logger().session_dir / f"{channel}.log").read_text()

    def test_no_session_by_default(self):
        self.assertIsNone(get_logger())

    def test_channels_and_levels(self):
        session = init_logging(vision_level=LogLevel.WARN, game_level=LogLevel.DEBUG,
                               base_dir=self.base_dir)
        self.assertIs(get_logger(), session)
        session.log("vision", LogLevel.INFO, "frame ok")
        session.log("vision", LogLevel.WARN, "board lost")
        session.log("game", LogLevel.DEBUG, "pending 3", context="state")
        session.flush()

        vision = self.read("vision")
        self.assertNotIn("frame ok", vision)
        self.assertIn("board lost", vision)
        self.assertIn("[state] pending 3", self.read("game"))

        with self.assertRaises(ValueError):
            session.log("audio", LogLevel.INFO, "beep")

    def test_component_logger_buffers_until_session(self):
        log = Logger("game", "inference")
        log.info("before session")
        self.assertEqual(log.pending, [(LogLevel.INFO, "before session")])

        init_logging(base_dir=self.base_dir)
        log.info("after session")
        get_logger().flush()

        text = self.read("game")
        self.assertIn("before session", text)
        self.assertIn("[inference] after session", text)
        self.assertEqual(log.pending, [])

    def test_pending_messages_are_capped(self):
        log = Logger("vision", "sensor")
        for i in range(MAX_PENDING + 20):
            log.debug(f"scan {i}")
        pending = log.pending
        self.assertEqual(len(pending), MAX_PENDING)
        self.assertEqual(pending[0], (LogLevel.DEBUG, "scan 20"))

        init_logging(vision_level=LogLevel.DEBUG, base_dir=self.base_dir)
        log.warn("board lost")
        get_logger().flush()

        text = self.read("vision")
        self.assertNotIn("[sensor] scan 19\n", text)
        self.assertIn("[sensor] scan 20", text)
        self.assertIn("[sensor] board lost", text)
        self.assertEqual(log.pending, [])

    def test_game_separators_and_error_files(self):
        session = init_logging(base_dir=self.base_dir)
        session.start_game({"human": "White"})
        session.end_game("White wins (checkmate)")
        text = self.read("game")
        self.assertIn("GAME 1 STARTED", text)
        self.assertIn("human: White", text)
        self.assertIn("Result: White wins (checkmate)", text)

        image_path = session.save_error_image("invalid_board", np.zeros((80, 80, 3), np.uint8))
        self.assertTrue(image_path.exists())
        self.assertIsNone(session.save_error_image("nothing", None))

        context_path = session.save_error_context("invalid_board", {"fen": "8/8/8/8/8/8/8/8 w - - 0 1"})
        self.assertIn("fen:", context_path.read_text())


if __name__ == '__main__':
    unittest.main()
