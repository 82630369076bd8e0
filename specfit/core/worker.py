"""
Background fit worker.

This module provides the QThread subclass that runs a specular fit on a
background thread, keeping any UI responsive during what can be a
minutes-long solve on megapixel textures.

Communication with the UI thread happens entirely through Qt signals.
Qt's signal/slot mechanism marshals cross-thread signals via
QueuedConnection (the default when sender and receiver live on different
threads), so:
    - The worker never touches any widget directly
    - Slot methods in the UI always execute on the main thread
    - No explicit mutex, lock, or QMetaObject.invokeMethod is needed

The worker receives the view stream, settings and workspace via constructor
injection, so it can be driven from tests without a UI.
"""

import dataclasses
import logging

from PySide6.QtCore import QThread, Signal

from specfit.core.errors import FitCancelled
from specfit.core.optimization import FitResult, SpecularOptimization
from specfit.core.pipeline import BASIS_PRESETS, FitStage
from specfit.core.reflectance import ReflectanceViewStream
from specfit.core.settings import SpecularFitSettings
from specfit.core.workspace import FitWorkspace

logger = logging.getLogger(__name__)


class FitWorker(QThread):
    """
    Runs a full specular fit on a background thread.

    Initialization, the alternating reconstruction / weight optimization
    stages, hole filling and export each emit stage_started and
    stage_completed, so a UI can follow the fit stage by stage.

    Signals:
        stage_started(str)    — A stage begins. Payload is the stage name.
        stage_completed(str)  — A stage finished successfully.
        progress(str, str)    — (stage_name, message) status updates within a stage.
        error(str, str)       — (stage_name, error_message) when a stage fails.
        fit_finished()        — Every stage completed successfully.
    """

    stage_started = Signal(str)
    stage_completed = Signal(str)
    progress = Signal(str, str)
    error = Signal(str, str)
    fit_finished = Signal()

    def __init__(self, view_stream: ReflectanceViewStream, settings: SpecularFitSettings,
                 workspace: FitWorkspace, basis_preset: str | None = None):
        super().__init__()
        self._view_stream = view_stream
        self._workspace = workspace

        # A preset overrides basis count and resolution but keeps metallicity.
        if basis_preset is not None:
            basis_count, resolution = BASIS_PRESETS[basis_preset]
            settings = dataclasses.replace(
                settings,
                basis=dataclasses.replace(settings.basis, basis_count=basis_count,
                                          basis_resolution=resolution),
            )
        self._settings = settings

        self._current_stage = FitStage.INITIALIZATION
        self.result: FitResult | None = None

        # Cooperative cancellation flag. Checked between stages (not mid-stage).
        # Single boolean reads/writes are atomic under the GIL.
        self._cancelled = False

    @property
    def settings(self) -> SpecularFitSettings:
        return self._settings

    def cancel(self):
        """Request cancellation of the fit. Takes effect between stages."""
        self._cancelled = True

    def run(self):
        """
        Execute every fit stage in sequence.

        Runs on the BACKGROUND THREAD — never access Qt widgets from here.

        On error, the fit stops at the failing stage and emits the error
        signal. On cancellation it stops quietly without emitting fit_finished.
        """
        driver = SpecularOptimization(self._settings, self._view_stream)

        try:
            self.result = driver.run(
                on_progress=self._report_progress,
                is_cancelled=lambda: self._cancelled,
                on_stage_started=self._enter_stage,
                on_stage_completed=self.stage_completed.emit,
            )

            if self._cancelled:
                return

            self._enter_stage(FitStage.EXPORT)
            driver.save(self._workspace.basis, self._workspace.weights, self._workspace.textures)
            self._report_progress(f"Saved results to {self._workspace.root}")
            self.stage_completed.emit(FitStage.EXPORT)

        except FitCancelled:
            logger.info("Fit cancelled during %s.", self._current_stage)
            return
        except Exception as e:
            # Any other exception stops the fit. The error signal carries the
            # stage name and a human-readable message.
            logger.exception("Fit failed during %s.", self._current_stage)
            self.error.emit(self._current_stage, str(e))
            return

        self.fit_finished.emit()

    def _enter_stage(self, stage: str):
        self._current_stage = stage
        self.stage_started.emit(stage)

    def _report_progress(self, message: str):
        self.progress.emit(self._current_stage, message)
