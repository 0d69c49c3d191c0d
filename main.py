#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command line entry point: watch a physical board through a camera (or a
recorded video) and print moves and engine recommendations as they happen.
"""
import argparse
import os
import sys

import chess
import numpy as np

import common.constants as constants
from common.logging import LogLevel, init_logging, get_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Track a chess game from a camera")
    parser.add_argument("--device", type=int, default=None,
                        help="Camera device index (overrides config)")
    parser.add_argument("--video", type=str, default=None,
                        help="Read frames from a video file instead of a camera")
    parser.add_argument("-d", "--difficulty", type=int, default=None,
                        help=f"Engine difficulty {constants.MIN_DIFFICULTY}-{constants.MAX_DIFFICULTY} "
                             f"(search depth = {constants.DEPTH_PER_LEVEL} x difficulty)")
    parser.add_argument("-e", "--engine", type=str, default=None,
                        help="Path to a UCI engine binary (default: stockfish on PATH)")
    parser.add_argument("--no-engine", action="store_true",
                        help="Play without recommendations")
    parser.add_argument("-p", "--play-as", choices=["white", "black"], default="white",
                        help="Colour played by the human")
    parser.add_argument("-c", "--config", type=str, default=None,
                        help="JSON configuration file")
    parser.add_argument("--corners", type=str, default=None,
                        help='Manual board corners "x,y x,y x,y x,y" (any order)')
    parser.add_argument("--capture-reference", action="store_true",
                        help="Use the first frame (empty board) as the diff reference; "
                             "the game starts once the pieces are set up")
    parser.add_argument("--watch-config", action="store_true",
                        help="Reload the configuration file when it changes")
    parser.add_argument("--max-frames", type=int, default=None,
                        help="Stop after this many frames")
    parser.add_argument("--save-config", type=str, default=None, metavar="PATH",
                        help="Write the effective configuration to PATH and exit")
    parser.add_argument("--console", action="store_true",
                        help="Echo log messages to the console")
    parser.add_argument("--debug", action="store_true",
                        help="Record DEBUG level messages in the logs")
    return parser


def parse_corners(text: str):
    points = []
    for pair in text.split():
        x, y = pair.split(",")
        points.append((int(x), int(y)))
    if len(points) != 4:
        raise argparse.ArgumentTypeError(f"Expected 4 corners, got {len(points)}")
    return points


def print_report(report) -> None:
    # Imported here so --help works without OpenCV installed
    from game_components.state_machine import (
        BoardCorrected, GameOver, InvalidBoard, MoveApplied, RecommendationReady, StateChanged,
    )

    for event in report.events:
        if isinstance(event, MoveApplied):
            who = "You" if event.by_human else "Engine side"
            note = " (ambiguous)" if event.ambiguous else ""
            if event.checked_king is not None:
                note += f" check, king on {chess.square_name(event.checked_king)}"
            print(f"{who}: {event.san}{note}")
        elif isinstance(event, RecommendationReady):
            print(f"Recommended: {event.san}")
        elif isinstance(event, InvalidBoard):
            print(f"Board does not match a legal move, check squares: {' '.join(event.square_names)}")
        elif isinstance(event, BoardCorrected):
            print("Board corrected")
        elif isinstance(event, GameOver):
            print(f"Game over: {event.outcome}")
        elif isinstance(event, StateChanged):
            print(f"[{event.new.name.lower()}]")


class GameStarter:
    """
    Submits StartGame to the tracker.

    When an empty-board reference is being captured the game must not begin
    against the empty board, so the start waits until the reference exists
    and the observed grid shows the starting position.
    """

    def __init__(self, tracker, human_color: chess.Color, wait_for_setup: bool = False):
        from game_components.occupancy import occupancy_from_board

        self.tracker = tracker
        self.human_color = human_color
        self.start_grid = occupancy_from_board(chess.Board())
        self.started = False
        if not wait_for_setup:
            self._start()

    def _start(self) -> None:
        from game_components.state_machine import StartGame

        self.tracker.submit(StartGame(human_color=self.human_color))
        self.started = True

    def __call__(self, report) -> None:
        if self.started or self.tracker.reference is None or report.grid is None:
            return
        if np.array_equal(report.grid, self.start_grid):
            print("Pieces set up, starting the game")
            self._start()


class ConfigWatcher:
    """Submits ReloadConfig whenever the configuration file changes on disk."""

    def __init__(self, tracker, path):
        self.tracker = tracker
        self.path = str(path)
        self.mtime = self._mtime()

    def _mtime(self):
        try:
            return os.path.getmtime(self.path)
        except OSError:
            return None

    def __call__(self, report) -> None:
        from tracker import ReloadConfig

        mtime = self._mtime()
        if mtime != self.mtime:
            self.mtime = mtime
            self.tracker.submit(ReloadConfig())


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    level = LogLevel.DEBUG if args.debug else LogLevel.INFO
    init_logging(vision_level=level, game_level=level, console_output=args.console)

    # Config and pipeline imports come after logging so their messages land in the session
    from common.errors import ConfigurationError
    from game_components.recommender import MoveRecommender
    from game_components.state_machine import StartGame
    from tracker import BoardTracker, CaptureReference, SetCorners
    from vision_components.camera import VideoStream
    from vision_components.config import TrackerConfig, get_config, save_config

    config = TrackerConfig(args.config) if args.config else get_config()
    try:
        if args.device is not None:
            config.set_override('camera', 'device', args.device)
        if args.difficulty is not None:
            config.set_override('engine', 'difficulty', args.difficulty)
        if args.engine is not None:
            config.set_override('engine', 'path', args.engine)
        settings = config.as_dict()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        get_logger().close()
        return 2

    if config.is_using_fallback():
        print("No configuration file found, using built-in defaults")
    else:
        print(f"Configuration: {config.config_file} (profile {config.get_profile_name() or 'default'})")
    if args.save_config:
        print(f"Configuration written to {save_config(settings, args.save_config)}")
        get_logger().close()
        return 0

    camera = settings['camera']
    if args.video is not None:
        if not os.path.exists(args.video):
            print(f"Video file not found: {args.video}", file=sys.stderr)
            get_logger().close()
            return 2
        source = VideoStream(args.video)
        max_failed_reads = 1
    else:
        source = VideoStream(camera['device'], camera['width'], camera['height'])
        max_failed_reads = None

    recommender = None
    if not args.no_engine:
        recommender = MoveRecommender(engine_path=settings['engine']['path'])
        recommender.start()

    tracker = BoardTracker(source=source, config=config, recommender=recommender,
                           max_failed_reads=max_failed_reads)
    if args.corners:
        tracker.submit(SetCorners(parse_corners(args.corners)))
    if args.capture_reference:
        tracker.submit(CaptureReference())
    human = chess.WHITE if args.play_as == "white" else chess.BLACK
    callbacks = [print_report, GameStarter(tracker, human, wait_for_setup=args.capture_reference)]
    if args.watch_config:
        callbacks.append(ConfigWatcher(tracker, config.loaded_from or config.config_file))

    def on_report(report):
        for callback in callbacks:
            callback(report)

    print(f"Watching {'video ' + args.video if args.video else 'camera ' + str(camera['device'])}, "
          f"difficulty {settings['engine']['difficulty']}. Ctrl-C to stop.")
    try:
        frames = tracker.run(max_frames=args.max_frames, on_report=on_report)
    except KeyboardInterrupt:
        frames = None
    finally:
        tracker.close()
        session_logger = get_logger()
        if session_logger:
            session_logger.close()

    if frames is not None:
        print(f"Processed {frames} frames")
    board = tracker.state_machine.board
    if board is not None:
        print(f"Final position: {board.fen()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
