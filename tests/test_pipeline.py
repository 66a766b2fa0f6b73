"""End-to-end tests for the background-removal orchestrator."""

import array
from io import BytesIO
import threading
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from conftest import FakeRuntime, StaticSource, all_opaque, make_image_bytes

from cutout_service.engine import InferenceEngine
from cutout_service.errors import (
    InvalidImageError,
    ModelLoadError,
    ProcessingCancelled,
    ProcessingFailedError,
    SizeLimitExceededError,
)
from cutout_service.model_loader import ModelAcquisition
from cutout_service.models import ProcessingOptions, Stage
from cutout_service.pipeline import BackgroundRemover, build_remover
from cutout_service.worker import EngineWorker

STAGE_ORDER = [
    Stage.VALIDATE,
    Stage.INIT,
    Stage.LOAD,
    Stage.PREPROCESS,
    Stage.INFER,
    Stage.MASK,
    Stage.COMPOSITE,
    Stage.ENCODE,
    Stage.COMPLETE,
]


def _decode(result):
    return np.asarray(Image.open(BytesIO(result.output)))


@pytest.fixture
def source_factory():
    return MagicMock(side_effect=lambda config: [StaticSource(config.filenames[0])])


@pytest.fixture
def remover(settings, fake_runtime, source_factory):
    engine = InferenceEngine(runtimes={"onnx": fake_runtime})
    return BackgroundRemover(engine, ModelAcquisition(source_factory), settings=settings)


class TestRemoveBackground:
    def test_subject_kept_background_removed(self, remover, portrait_bytes):
        result = remover.remove_background(portrait_bytes, ProcessingOptions(quality="medium"))

        assert (result.width, result.height) == (800, 400)
        assert result.method_used == "onnx:u2net"
        assert result.media_type == "image/png"
        assert result.processing_time_ms >= 0
        rgba = _decode(result)
        assert rgba.shape == (400, 800, 4)
        assert rgba[200, 400, 3] == 255  # inside the red block
        assert tuple(rgba[200, 400, :3]) == (200, 30, 30)
        assert rgba[20, 20, 3] == 0  # white background
        assert rgba[380, 780, 3] == 0

    def test_all_opaque_model_keeps_whole_image(self, settings, source_factory):
        engine = InferenceEngine(runtimes={"onnx": FakeRuntime(output_fn=all_opaque)})
        remover = BackgroundRemover(engine, ModelAcquisition(source_factory), settings=settings)
        data = make_image_bytes(800, 400, fmt="JPEG")
        rgba = _decode(remover.remove_background(data))
        assert (rgba[..., 3] == 255).all()

    def test_progress_events_in_stage_order(self, remover, portrait_bytes):
        events = []
        remover.remove_background(portrait_bytes, on_progress=events.append)

        stages = [e.stage for e in events]
        assert stages[0] is Stage.VALIDATE
        assert stages[-1] is Stage.COMPLETE
        order = [STAGE_ORDER.index(s) for s in stages]
        assert order == sorted(order)
        assert set(stages) == set(STAGE_ORDER)
        progress = [e.progress for e in events]
        assert progress == sorted(progress)
        assert events[-1].progress == 100

    def test_progress_callback_from_options(self, remover, portrait_bytes):
        events = []
        remover.remove_background(portrait_bytes, ProcessingOptions(on_progress=events.append))
        assert events[-1].stage is Stage.COMPLETE

    def test_low_quality_uses_mobilenet_and_caps_size(self, remover, portrait_bytes, source_factory):
        result = remover.remove_background(portrait_bytes, ProcessingOptions(quality="low"))
        assert result.method_used == "onnx:mobilenet"
        assert (result.width, result.height) == (512, 256)
        assert source_factory.call_args[0][0].name == "mobilenet"

    def test_model_acquired_once(self, remover, portrait_bytes, source_factory, fake_runtime):
        remover.remove_background(portrait_bytes)
        remover.remove_background(portrait_bytes)
        assert source_factory.call_count == 1
        assert len(fake_runtime.sessions) == 1
        assert fake_runtime.sessions[0].calls == 2

    def test_input_bytes_not_mutated(self, remover):
        data = bytearray(make_image_bytes(64, 32, box=(10, 5, 30, 20)))
        snapshot = bytes(data)
        remover.remove_background(data)
        assert bytes(data) == snapshot

    def test_feathered_edges(self, remover):
        data = make_image_bytes(320, 320, box=(100, 100, 219, 219))
        hard = _decode(remover.remove_background(data, ProcessingOptions(max_dimension=320)))
        soft = _decode(remover.remove_background(data, ProcessingOptions(max_dimension=320, feather_radius=4)))
        hard_alpha = set(np.unique(hard[..., 3]).tolist())
        soft_alpha = np.unique(soft[..., 3])
        assert hard_alpha <= {0, 255}
        assert len(soft_alpha) > 2
        assert soft[160, 160, 3] == 255
        assert soft[5, 5, 3] == 0

    def test_method_reports_the_loaded_runtime(self, settings, source_factory, portrait_bytes):
        runtime = FakeRuntime()
        runtime.name = "tensorrt"
        remover = BackgroundRemover(
            InferenceEngine(runtimes={"onnx": runtime}), ModelAcquisition(source_factory), settings=settings
        )
        assert remover.remove_background(portrait_bytes).method_used == "tensorrt:u2net"

    def test_webp_output(self, remover, portrait_bytes):
        result = remover.remove_background(portrait_bytes, ProcessingOptions(output_format="webp"))
        assert result.media_type == "image/webp"
        assert Image.open(BytesIO(result.output)).format == "WEBP"


class TestFailures:
    def test_size_limit_checked_before_acquisition(self, settings, fake_runtime):
        settings.max_file_size_bytes = 100
        acquisition = MagicMock(spec=ModelAcquisition)
        remover = BackgroundRemover(InferenceEngine(runtimes={"onnx": fake_runtime}), acquisition, settings=settings)
        events = []

        with pytest.raises(SizeLimitExceededError):
            remover.remove_background(b"x" * 101, on_progress=events.append)

        assert acquisition.ensure.call_count == 0
        assert fake_runtime.sessions == []
        assert all(e.stage is Stage.VALIDATE for e in events)

    def test_size_limit_counts_bytes_not_elements(self, remover, settings):
        settings.max_file_size_bytes = 100
        wide = memoryview(array.array("i", [0] * 30))  # 30 elements, 120 bytes
        with pytest.raises(SizeLimitExceededError, match="120 bytes"):
            remover.remove_background(wide)

    def test_invalid_image(self, remover):
        with pytest.raises(InvalidImageError):
            remover.remove_background(b"not an image at all")

    def test_empty_input(self, remover):
        with pytest.raises(InvalidImageError):
            remover.remove_background(b"")

    def test_dimension_limit(self, remover, settings):
        settings.max_image_dimension = 500
        with pytest.raises(SizeLimitExceededError):
            remover.remove_background(make_image_bytes(800, 400))

    def test_model_load_failure(self, settings, fake_runtime):
        failing = ModelAcquisition(lambda config: [StaticSource(fail_with=OSError("no model"))])
        remover = BackgroundRemover(InferenceEngine(runtimes={"onnx": fake_runtime}), failing, settings=settings)
        with pytest.raises(ModelLoadError, match="no model"):
            remover.remove_background(make_image_bytes(10, 10))

    def test_bad_model_output_is_processing_failure(self, settings, source_factory, portrait_bytes):
        runtime = FakeRuntime(output_fn=lambda batch: np.zeros((1, 2, 8, 8), dtype=np.float32))
        remover = BackgroundRemover(
            InferenceEngine(runtimes={"onnx": runtime}), ModelAcquisition(source_factory), settings=settings
        )
        with pytest.raises(ProcessingFailedError):
            remover.remove_background(portrait_bytes)

    def test_unexpected_error_is_wrapped(self, remover, portrait_bytes, monkeypatch):
        def explode(*args, **kwargs):
            raise MemoryError("out of memory")

        monkeypatch.setattr("cutout_service.pipeline.composite_mask_to_original", explode)
        with pytest.raises(ProcessingFailedError, match="out of memory") as info:
            remover.remove_background(portrait_bytes)
        assert isinstance(info.value.__cause__, MemoryError)

    def test_unknown_model_override(self, remover, portrait_bytes):
        with pytest.raises(ProcessingFailedError, match="Unknown model"):
            remover.remove_background(portrait_bytes, ProcessingOptions(model="sam"))


class TestCancellation:
    def test_cancel_before_start(self, remover, portrait_bytes, source_factory):
        cancel = threading.Event()
        cancel.set()
        events = []
        with pytest.raises(ProcessingCancelled):
            remover.remove_background(portrait_bytes, on_progress=events.append, cancel_event=cancel)
        assert events == []
        assert source_factory.call_count == 0

    def test_cancel_mid_pipeline_suppresses_progress(self, remover, portrait_bytes):
        cancel = threading.Event()
        events = []

        def on_progress(event):
            events.append(event)
            if event.stage is Stage.PREPROCESS:
                cancel.set()

        with pytest.raises(ProcessingCancelled):
            remover.remove_background(portrait_bytes, on_progress=on_progress, cancel_event=cancel)
        assert events[-1].stage is Stage.PREPROCESS
        assert Stage.COMPLETE not in [e.stage for e in events]


def test_worker_engine_can_back_the_pipeline(settings, source_factory, portrait_bytes):
    worker = EngineWorker(InferenceEngine(runtimes={"onnx": FakeRuntime()}))
    with BackgroundRemover(worker, ModelAcquisition(source_factory), settings=settings) as remover:
        result = remover.remove_background(portrait_bytes)
    assert result.method_used == "onnx:u2net"
    assert worker.state.value == "disposed"


def test_build_remover_uses_worker_when_configured(settings):
    settings.inference_worker_thread = True
    remover = build_remover(settings)
    try:
        assert isinstance(remover.engine, EngineWorker)
    finally:
        remover.close()
