"""
PetGaze - webcam gaze tracking for a desktop pet

Main entry point.

Privacy & Security:
- No data sent over network
- All processing local
- No video recording
- Minimal data storage (calibration only)

Usage:
    python -m petgaze.main
    python -m petgaze.main --headless --source synthetic
"""

import argparse
import sys
from typing import List, Optional, Tuple

from petgaze.core.config import SOURCE_KINDS, AppConfig, get_default_config
from petgaze.core.engine import GazeEngine
from petgaze.core.events import (
    CalibrationCancelled,
    CalibrationCompleted,
    FixationEvent,
    PointRecorded,
    QualityCheckCompleted,
)
from petgaze.utils.logger import setup_logger, get_logger
from petgaze.utils.timing import FrameRateLimiter


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="petgaze", description="Webcam gaze tracking for a desktop pet")
    parser.add_argument("--headless", action="store_true", help="Run without the overlay window")
    parser.add_argument("--source", choices=SOURCE_KINDS, help="Gaze source (default: camera)")
    parser.add_argument("--camera", type=int, help="Camera device index")
    parser.add_argument(
        "--screen",
        metavar="WxH",
        help="Screen size for headless mode (default: 1920x1080)",
    )
    parser.add_argument("--calibrate", action="store_true", help="Start calibration immediately")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser.parse_args(argv)


def parse_screen(value: Optional[str]) -> Tuple[int, int]:
    if not value:
        return (1920, 1080)
    try:
        width, height = (int(part) for part in value.lower().split("x"))
    except ValueError:
        raise ValueError(f"Invalid screen size: {value!r}, expected WxH")
    if width <= 0 or height <= 0:
        raise ValueError(f"Screen size must be positive, got {value!r}")
    return (width, height)


def build_config(args: argparse.Namespace) -> AppConfig:
    config = get_default_config()
    if args.source:
        config.source.kind = args.source
    if args.camera is not None:
        config.camera.device = args.camera
    if args.log_level:
        config.log_level = args.log_level
    return config


def _print_events(engine: GazeEngine):
    def show(event):
        if isinstance(event, PointRecorded):
            print(f"Target {event.index} recorded, error {event.residual:.0f}px")
        elif isinstance(event, CalibrationCompleted):
            print(f"Calibration {event.report.grade.value}: mean error {event.report.mean_error:.0f}px")
        elif isinstance(event, CalibrationCancelled):
            print("Calibration cancelled")
        elif isinstance(event, FixationEvent):
            print(f"Fixation at ({event.point[0]:.0f}, {event.point[1]:.0f})")
        elif isinstance(event, QualityCheckCompleted):
            print(f"Quality check {event.result.grade.value}")

    engine.events.subscribe(show)


def run_headless(config: AppConfig, screen: Tuple[int, int], calibrate: bool) -> int:
    logger = get_logger(__name__)

    engine = GazeEngine(config, screen[0], screen[1])
    if not engine.start():
        logger.error(f"Could not start gaze engine: {engine.error.message if engine.error else 'unknown error'}")
        return 1

    _print_events(engine)
    if calibrate:
        engine.start_calibration()

    limiter = FrameRateLimiter(config.ui.headless_fps)
    try:
        while True:
            engine.tick()
            limiter.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        engine.shutdown()
    return 0


def run_overlay(config: AppConfig, calibrate: bool) -> int:
    from PyQt6.QtWidgets import QApplication
    from petgaze.gui.overlay import GazeOverlay

    logger = get_logger(__name__)

    app = QApplication(sys.argv)
    app.setApplicationName("PetGaze")
    app.setApplicationVersion(config.version)

    geometry = app.primaryScreen().geometry()
    engine = GazeEngine(config, geometry.width(), geometry.height())
    if not engine.start():
        logger.error(f"Could not start gaze engine: {engine.error.message if engine.error else 'unknown error'}")

    overlay = GazeOverlay(engine, config)
    overlay.showFullScreen()
    overlay.start()
    if calibrate:
        engine.start_calibration()

    logger.info("Overlay window created")

    exit_code = app.exec()

    logger.info("Application exiting")
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = build_config(args)
        config._validate()
        screen = parse_screen(args.screen)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logger(
        name="petgaze",
        level=config.log_level,
        log_file=config.storage.log_path,
        enable_file_logging=config.storage.enable_file_logging,
    )

    logger = get_logger(__name__)
    logger.info("=" * 60)
    logger.info("PetGaze Starting")
    logger.info(f"Version: {config.version}")
    logger.info("=" * 60)

    if args.headless:
        return run_headless(config, screen, args.calibrate)
    return run_overlay(config, args.calibrate)


if __name__ == "__main__":
    sys.exit(main())
