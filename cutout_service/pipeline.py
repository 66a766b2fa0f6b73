"""
High-level background-removal pipeline.

`BackgroundRemover.remove_background` is the main entry point used by both
the HTTP API and local scripts. It keeps orchestration simple:
bytes in -> model acquisition -> letterbox -> encode -> inference -> mask ->
composite -> encoded RGBA bytes out, reporting progress along the way.

The engine and acquisition strategy are handed in at construction; nothing
here is a process-wide singleton.
"""

from __future__ import annotations

from contextlib import ExitStack
import logging
from threading import Event, Lock
import time
from typing import Optional

import numpy as np

from . import config
from .engine import InferenceEngine
from .errors import (
    InvalidImageError,
    ProcessingCancelled,
    ProcessingError,
    ProcessingFailedError,
    SizeLimitExceededError,
)
from .model_loader import ModelAcquisition, default_source_factory
from .models import (
    ProcessingOptions,
    ProcessingResult,
    ProgressCallback,
    ProgressEvent,
    Stage,
)
from .postprocessing import MEDIA_TYPES, composite_mask_to_original, encode_output, maybe_dump_debug
from .preprocessing import load_and_fit
from .tensor_codec import decode, decode_continuous, encode, tensor_to_pixels
from .worker import EngineWorker

logger = logging.getLogger(__name__)


class _ProgressReporter:
    """Forwards progress unless the invocation was cancelled."""

    def __init__(self, callback: Optional[ProgressCallback], cancel_event: Optional[Event]) -> None:
        self._callback = callback
        self._cancel_event = cancel_event

    def checkpoint(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ProcessingCancelled("Background removal was cancelled")

    def emit(self, stage: Stage, progress: int) -> None:
        self.checkpoint()
        if self._callback is None:
            return
        try:
            self._callback(ProgressEvent(stage=stage, progress=progress))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Progress callback failed at %s: %s", stage.value, exc)


class BackgroundRemover:
    def __init__(
        self,
        engine,
        acquisition: ModelAcquisition,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self._engine = engine
        self._acquisition = acquisition
        self._settings = settings or config.get_settings()
        # One invocation at a time per engine.
        self._lock = Lock()

    @property
    def engine(self):
        return self._engine

    def remove_background(
        self,
        image_bytes: bytes,
        options: Optional[ProcessingOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[Event] = None,
    ) -> ProcessingResult:
        """
        Full pipeline from raw image bytes to an encoded RGBA cut-out.

        Raises:
            ProcessingError: typed failure (invalid image, size limit, model
                load, processing).
            ProcessingCancelled: `cancel_event` was set before completion.
        """
        options = options or ProcessingOptions(quality=self._settings.default_quality)
        reporter = _ProgressReporter(on_progress or options.on_progress, cancel_event)
        with self._lock:
            return self._process(image_bytes, options, reporter)

    def _process(
        self, image_bytes: bytes, options: ProcessingOptions, reporter: _ProgressReporter
    ) -> ProcessingResult:
        started = time.perf_counter()
        settings = self._settings

        reporter.emit(Stage.VALIDATE, 0)
        if not isinstance(image_bytes, (bytes, bytearray, memoryview)):
            raise InvalidImageError("Image data must be bytes")
        size = memoryview(image_bytes).nbytes
        if size > settings.max_file_size_bytes:
            raise SizeLimitExceededError(
                f"File is {size} bytes; the limit is {settings.max_file_size_bytes} bytes"
            )
        if size == 0:
            raise InvalidImageError("Image data is empty")
        data = bytes(image_bytes)
        try:
            resolved = config.resolve_options(options)
        except ValueError as exc:
            raise ProcessingFailedError(str(exc)) from exc
        model_config = config.get_model_config(resolved.model_name)
        reporter.emit(Stage.VALIDATE, 5)

        with ExitStack() as stack:
            try:
                reporter.emit(Stage.INIT, 10)
                effective = self._acquisition.ensure(self._engine, model_config)
                reporter.emit(Stage.INIT, 20)

                reporter.emit(Stage.LOAD, 25)
                fitted = load_and_fit(
                    data,
                    input_size=effective.input_size,
                    max_dimension=resolved.max_dimension,
                    max_image_dimension=settings.max_image_dimension,
                )
                stack.callback(fitted.close)

                reporter.emit(Stage.PREPROCESS, 35)
                tensor = encode(np.asarray(fitted.canvas, dtype=np.uint8), effective)

                reporter.emit(Stage.INFER, 50)
                output = self._engine.run(tensor)
                reporter.emit(Stage.INFER, 70)

                reporter.emit(Stage.MASK, 75)
                if resolved.feather_radius > 0:
                    mask = decode_continuous(output, effective.output_kind)
                else:
                    mask = decode(output, resolved.threshold, effective.output_kind)

                reporter.emit(Stage.COMPOSITE, 85)
                rgba = composite_mask_to_original(
                    mask,
                    fitted.placement,
                    fitted.width,
                    fitted.height,
                    fitted.original,
                    feather_radius=resolved.feather_radius,
                )
                if settings.debug:
                    maybe_dump_debug(
                        settings.debug_output_dir, tensor_to_pixels(tensor, effective), mask, rgba
                    )
                del tensor, output

                reporter.emit(Stage.ENCODE, 92)
                encoded = encode_output(rgba, resolved.output_format)
            except (ProcessingError, ProcessingCancelled):
                raise
            except Exception as exc:
                logger.exception("Background removal failed: %s", exc)
                raise ProcessingFailedError(f"Background removal failed: {exc}") from exc

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        reporter.emit(Stage.COMPLETE, 100)
        method = self._engine.method
        logger.info(
            "Removed background %dx%d via %s in %.1f ms", rgba.shape[1], rgba.shape[0], method, elapsed_ms
        )
        return ProcessingResult(
            output=encoded,
            width=int(rgba.shape[1]),
            height=int(rgba.shape[0]),
            processing_time_ms=elapsed_ms,
            method_used=method,
            media_type=MEDIA_TYPES[resolved.output_format],
        )

    def close(self) -> None:
        self._engine.dispose()

    def __enter__(self) -> "BackgroundRemover":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def build_remover(settings: Optional[config.Settings] = None) -> BackgroundRemover:
    """Wire the default runtimes, engine (optionally off-thread) and sources."""
    settings = settings or config.get_settings()
    engine = InferenceEngine()
    if settings.inference_worker_thread:
        engine = EngineWorker(engine)
    acquisition = ModelAcquisition(default_source_factory(settings))
    return BackgroundRemover(engine, acquisition, settings=settings)
