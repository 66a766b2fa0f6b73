"""Pytest configuration and fixtures."""

from io import BytesIO
from pathlib import Path

import numpy as np
import pytest
from PIL import Image, ImageDraw

from cutout_service.config import IMAGENET_MEAN, IMAGENET_STD, Settings
from cutout_service.runtimes import ModelHandle


def subject_mask(batch: np.ndarray) -> np.ndarray:
    """Fake segmentation: anything noticeably darker than white is subject."""
    white_red = (1.0 - IMAGENET_MEAN[0]) / IMAGENET_STD[0]
    size = batch.shape[-1]
    mask = (batch[0, 0] < white_red - 0.5).astype(np.float32)
    return mask.reshape(1, 1, size, size)


def all_opaque(batch: np.ndarray) -> np.ndarray:
    size = batch.shape[-1]
    return np.ones((1, 1, size, size), dtype=np.float32)


class FakeSession:
    backend = "fake:cpu"

    def __init__(self, output_fn, input_shape=None):
        self._output_fn = output_fn
        self._input_shape = input_shape
        self.calls = 0
        self.released = False

    @property
    def input_shape(self):
        return self._input_shape

    def run(self, batch):
        self.calls += 1
        return self._output_fn(batch)

    def release(self):
        self.released = True


class FakeRuntime:
    name = "onnx"

    def __init__(self, output_fn=subject_mask, input_shape=None, fail_with=None):
        self.output_fn = output_fn
        self.input_shape = input_shape
        self.fail_with = fail_with
        self.sessions = []

    def create_session(self, handle):
        if self.fail_with is not None:
            raise self.fail_with
        session = FakeSession(self.output_fn, self.input_shape)
        self.sessions.append(session)
        return session


class StaticSource:
    def __init__(self, name="u2net.onnx", fail_with=None):
        self.name = name
        self.fail_with = fail_with
        self.calls = 0
        self.invalidated = 0

    def describe(self):
        return f"memory://{self.name}"

    def acquire(self):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return ModelHandle(name=self.name, data=b"fake-model", format="onnx", origin=self.describe())

    def invalidate(self):
        self.invalidated += 1

    def __repr__(self):
        return f"StaticSource({self.name})"


def make_image_bytes(width, height, color=(255, 255, 255), fmt="PNG", box=None, box_color=(200, 30, 30)):
    """Encode a solid image, optionally with a filled rectangle."""
    img = Image.new("RGB", (width, height), color=color)
    if box is not None:
        ImageDraw.Draw(img).rectangle(box, fill=box_color)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        model_dir=tmp_path / "models",
        model_cache_dir=tmp_path / "cache",
        model_cdn_base_url=None,
        max_file_size_bytes=10 * 1024 * 1024,
        max_image_dimension=4096,
        debug=False,
    )


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def portrait_bytes() -> bytes:
    """800x400 white image with a dark red block in the middle."""
    return make_image_bytes(800, 400, box=(300, 100, 499, 299))
