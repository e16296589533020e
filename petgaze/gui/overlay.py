"""
Desktop overlay host for the gaze engine.

A frameless, translucent, always-on-top window covering the screen. It
drives the engine from a QTimer and draws only what the engine reports:
the current calibration target, the gaze dot and a status line.

Keys:
    C       start calibration
    Space   record the current calibration point
    Esc     cancel calibration
    R       reset calibration
    V       toggle detection mode
    Q       run the quality check
"""

from typing import Optional

from PyQt6.QtWidgets import QWidget
from PyQt6.QtCore import Qt, QTimer
from PyQt6.QtGui import QPainter, QPen, QColor, QKeyEvent

from petgaze.core.config import AppConfig
from petgaze.core.engine import GazeEngine
from petgaze.core.events import (
    CalibrationCancelled,
    CalibrationCompleted,
    CalibrationStarted,
    FixationEvent,
    PointRecorded,
    QualityCheckCompleted,
)
from petgaze.core.state import CalibrationState, GazeSnapshot
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)

# How long a status or fixation flash stays on screen (ticks)
_FLASH_TICKS = 45


class GazeOverlay(QWidget):
    """Full-screen overlay showing calibration targets and gaze."""

    def __init__(self, engine: GazeEngine, config: AppConfig, parent=None):
        super().__init__(parent)

        self._engine = engine
        self._config = config
        self._snapshot: Optional[GazeSnapshot] = None

        self._status_text = "Press C to calibrate"
        self._fixation_point = None
        self._fixation_ticks = 0

        self.setWindowTitle(config.ui.window_title)
        self.setWindowFlags(
            Qt.WindowType.Window
            | Qt.WindowType.FramelessWindowHint
            | Qt.WindowType.WindowStaysOnTopHint
        )
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground)
        self.setFocusPolicy(Qt.FocusPolicy.StrongFocus)

        events = engine.events
        events.subscribe(self._on_calibration_started, CalibrationStarted)
        events.subscribe(self._on_point_recorded, PointRecorded)
        events.subscribe(self._on_calibration_completed, CalibrationCompleted)
        events.subscribe(self._on_calibration_cancelled, CalibrationCancelled)
        events.subscribe(self._on_fixation, FixationEvent)
        events.subscribe(self._on_quality_checked, QualityCheckCompleted)

        self._timer = QTimer(self)
        self._timer.timeout.connect(self._on_tick)

    def start(self):
        self._timer.start(self._config.ui.tick_interval_ms)
        logger.info(f"Overlay ticking every {self._config.ui.tick_interval_ms}ms")

    def _on_tick(self):
        self._snapshot = self._engine.tick()
        if self._fixation_ticks > 0:
            self._fixation_ticks -= 1
        self.update()

    # ------------------------------------------------------------------
    # Event handlers

    def _on_calibration_started(self, event: CalibrationStarted):
        self._status_text = f"Calibration: look at each of the {event.target_count} targets"

    def _on_point_recorded(self, event: PointRecorded):
        done, total = self._engine.calibration.progress
        flag = " (low confidence)" if event.low_confidence else ""
        self._status_text = f"Target {done}/{total} recorded{flag}"

    def _on_calibration_completed(self, event: CalibrationCompleted):
        report = event.report
        self._status_text = (
            f"Calibration {report.grade.value}: mean error {report.mean_error:.0f}px, "
            f"accuracy {report.accuracy:.0%}"
        )
        if report.recommend_recalibration:
            self._status_text += " - press C to recalibrate"

    def _on_calibration_cancelled(self, event: CalibrationCancelled):
        self._status_text = "Calibration cancelled"

    def _on_fixation(self, event: FixationEvent):
        self._fixation_point = event.point
        self._fixation_ticks = _FLASH_TICKS

    def _on_quality_checked(self, event: QualityCheckCompleted):
        result = event.result
        self._status_text = (
            f"Quality check {result.grade.value}: center error {result.center_error:.0f}px, "
            f"jitter {result.jitter:.0f}px"
        )

    # ------------------------------------------------------------------
    # Input

    def keyPressEvent(self, event: QKeyEvent):
        key = event.key()

        if key == Qt.Key.Key_C:
            if not self._engine.start_calibration():
                self._status_text = "Cannot calibrate: gaze source not running"
        elif key == Qt.Key.Key_Space:
            self._engine.record_calibration_point()
        elif key == Qt.Key.Key_Escape:
            if not self._engine.cancel_calibration():
                self.close()
        elif key == Qt.Key.Key_R:
            self._engine.reset_calibration()
            self._status_text = "Calibration reset"
        elif key == Qt.Key.Key_V:
            mode = self._engine.toggle_detection_mode()
            if mode is not None:
                self._status_text = f"Detection mode: {mode}"
        elif key == Qt.Key.Key_Q:
            if self._engine.start_quality_check():
                self._status_text = "Quality check: look at the screen center"
        else:
            super().keyPressEvent(event)

    # ------------------------------------------------------------------
    # Painting

    def paintEvent(self, event):
        painter = QPainter(self)
        painter.setRenderHint(QPainter.RenderHint.Antialiasing)

        calibration = self._engine.calibration
        if calibration is not None and calibration.is_active:
            painter.fillRect(self.rect(), QColor(0, 0, 0, 160))
            target = calibration.current_target
            if target is not None:
                self._draw_target(painter, target.x, target.y, calibration.state)
        elif self._engine.quality_check is not None and self._engine.quality_check.is_running:
            cx, cy = self._engine.quality_check.center
            self._draw_target(painter, cx, cy, CalibrationState.WAITING_FOR_STABILITY)

        snapshot = self._snapshot
        if snapshot is not None and snapshot.is_valid and snapshot.screen_point is not None:
            self._draw_gaze(painter, snapshot.screen_point, snapshot.is_calibrated)

        if self._fixation_ticks > 0 and self._fixation_point is not None:
            r = int(self._config.fixation.radius)
            painter.setPen(QPen(QColor(80, 220, 120), 3))
            painter.setBrush(Qt.BrushStyle.NoBrush)
            x, y = int(self._fixation_point[0]), int(self._fixation_point[1])
            painter.drawEllipse(x - r, y - r, r * 2, r * 2)

        self._draw_status(painter)

    def _draw_target(self, painter: QPainter, x: float, y: float, state: CalibrationState):
        size = self._config.ui.target_size
        x, y = int(x), int(y)

        painter.setPen(QPen(QColor(255, 255, 255), 3))
        painter.setBrush(QColor(255, 255, 255))
        painter.drawEllipse(x - size, y - size, size * 2, size * 2)

        # Inner dot turns green while samples are collected
        inner = QColor(0, 200, 0) if state == CalibrationState.COLLECTING_SAMPLES else QColor(255, 0, 0)
        painter.setPen(QPen(inner, 2))
        painter.setBrush(inner)
        painter.drawEllipse(x - size // 2, y - size // 2, size, size)

    def _draw_gaze(self, painter: QPainter, point, calibrated: bool):
        r = self._config.ui.gaze_dot_radius
        color = QColor(0, 160, 255, 200) if calibrated else QColor(255, 170, 0, 200)
        painter.setPen(QPen(color, 2))
        painter.setBrush(color)
        painter.drawEllipse(int(point[0]) - r, int(point[1]) - r, r * 2, r * 2)

    def _draw_status(self, painter: QPainter):
        text = self._status_text
        if self._config.ui.show_debug_overlay:
            text += f"   [{self._engine.fps:.0f} fps, {self._engine.calibration_state.name}]"

        painter.setPen(QColor(255, 255, 255))
        font = painter.font()
        font.setPointSize(14)
        painter.setFont(font)
        painter.drawText(0, 20, self.width(), 40, Qt.AlignmentFlag.AlignCenter, text)

    def closeEvent(self, event):
        logger.info("Overlay closing")
        self._timer.stop()
        self._engine.shutdown()
        event.accept()
