"""
Background fit worker.

The worker's run() is called directly on the test thread, so every signal
is delivered synchronously through a direct connection.

Covers:
- Stage signals, progress and exported files for a successful fit
- Error reporting with the failing stage name
- Cancellation before the fit starts
- Basis presets
"""

import numpy as np
import pytest

pytest.importorskip("PySide6.QtCore")

from PySide6.QtCore import QCoreApplication  # noqa: E402

from specfit.core.pipeline import BASIS_PRESETS, FitStage  # noqa: E402
from specfit.core.reflectance import ReflectanceViewStream  # noqa: E402
from specfit.core.serializer import (  # noqa: E402
    BASIS_FUNCTIONS_FILENAME,
    DIFFUSE_MAP_FILENAME,
    weight_filename,
)
from specfit.core.settings import (  # noqa: E402
    SpecularBasisSettings,
    SpecularFitSettings,
    TextureResolution,
)
from specfit.core.worker import FitWorker  # noqa: E402
from specfit.core.workspace import create_workspace  # noqa: E402


@pytest.fixture(scope="module")
def qt_app():
    return QCoreApplication.instance() or QCoreApplication([])


@pytest.fixture
def settings():
    return SpecularFitSettings(
        texture=TextureResolution(4, 4),
        basis=SpecularBasisSettings(basis_count=2, basis_resolution=4, metallicity=0.25),
        max_iterations=2,
    )


class _Recorder:

    def __init__(self, worker):
        self.started, self.completed, self.progress, self.errors = [], [], [], []
        self.finished = 0
        worker.stage_started.connect(self.started.append)
        worker.stage_completed.connect(self.completed.append)
        worker.progress.connect(lambda stage, message: self.progress.append((stage, message)))
        worker.error.connect(lambda stage, message: self.errors.append((stage, message)))
        worker.fit_finished.connect(self._on_finished)

    def _on_finished(self):
        self.finished += 1


def _views(render_views, two_material_basis, rng, texel_count):
    first = rng.uniform(0.1, 0.9, size=texel_count)
    return render_views(two_material_basis, np.stack([first, 1.0 - first], axis=1))


def test_successful_fit_exports_results(qt_app, tmp_path, rng, settings,
                                        render_views, two_material_basis):
    workspace = create_workspace(tmp_path)
    worker = FitWorker(_views(render_views, two_material_basis, rng, 16), settings, workspace)
    recorder = _Recorder(worker)

    worker.run()

    assert recorder.errors == []
    assert recorder.finished == 1
    assert recorder.started[0] == FitStage.INITIALIZATION
    assert recorder.started[-2:] == [FitStage.HOLE_FILLING, FitStage.EXPORT]
    assert recorder.completed == recorder.started
    assert (FitStage.INITIALIZATION, "Clustering texel colors...") in recorder.progress
    assert recorder.progress[-1] == (FitStage.EXPORT, f"Saved results to {workspace.root}")

    assert worker.result is not None
    assert (workspace.basis / BASIS_FUNCTIONS_FILENAME).is_file()
    assert (workspace.weights / weight_filename(1)).is_file()
    assert (workspace.textures / DIFFUSE_MAP_FILENAME).is_file()


def test_failure_reports_stage(qt_app, tmp_path, settings, make_view):
    # Views sized for a different texture fail while clustering.
    views = ReflectanceViewStream([make_view(9)])
    worker = FitWorker(views, settings, create_workspace(tmp_path))
    recorder = _Recorder(worker)

    worker.run()

    assert recorder.finished == 0
    assert len(recorder.errors) == 1
    stage, message = recorder.errors[0]
    assert stage == FitStage.INITIALIZATION
    assert "expected 16" in message


def test_cancel_before_start(qt_app, tmp_path, rng, settings, render_views, two_material_basis):
    worker = FitWorker(_views(render_views, two_material_basis, rng, 16), settings,
                       create_workspace(tmp_path))
    recorder = _Recorder(worker)

    worker.cancel()
    worker.run()

    assert recorder.started == []
    assert recorder.errors == []
    assert recorder.finished == 0
    assert worker.result is None


def test_preset_overrides_basis_shape(qt_app, tmp_path, settings):
    label = "Preview (4 bases, 45 buckets)"
    worker = FitWorker(ReflectanceViewStream(), settings, create_workspace(tmp_path),
                       basis_preset=label)

    assert (worker.settings.basis.basis_count,
            worker.settings.basis.basis_resolution) == BASIS_PRESETS[label]
    assert worker.settings.basis.metallicity == 0.25
    assert worker.settings.texture == settings.texture
