"""
Inference engine adapter.

Owns exactly one runtime session at a time and its lifecycle:

    UNINITIALIZED -> LOADING -> READY -> DISPOSED

Re-initializing from READY releases the previous session first. A failed
load releases whatever was partially built and returns to UNINITIALIZED so
another source can be tried. After `dispose()` the engine refuses all work.
"""

from __future__ import annotations

import dataclasses
from enum import Enum
import logging
from threading import Lock
from typing import Mapping, Optional

import numpy as np

from .errors import EngineBusyError, ModelLoadError, ProcessingFailedError, SessionReleasedError
from .models import ModelConfig, Tensor
from .runtimes import InferenceRuntime, RuntimeSession, default_runtimes

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    DISPOSED = "disposed"


def adopt_declared_input_size(config: ModelConfig, input_shape) -> ModelConfig:
    """Prefer the model's own static NCHW input side over the preset's."""
    if not input_shape or len(input_shape) != 4:
        return config
    height, width = input_shape[2], input_shape[3]
    if not isinstance(height, int) or not isinstance(width, int) or height <= 0:
        return config
    if height != width:
        raise ValueError(f"Model expects a non-square {width}x{height} input")
    if height == config.input_size:
        return config
    logger.info("Updating %s input size from %d to %d", config.name, config.input_size, height)
    return dataclasses.replace(config, input_size=height)


class InferenceEngine:
    def __init__(self, runtimes: Optional[Mapping[str, InferenceRuntime]] = None) -> None:
        self._runtimes = dict(runtimes) if runtimes is not None else default_runtimes()
        self._session: Optional[RuntimeSession] = None
        self._config: Optional[ModelConfig] = None
        self._method: Optional[str] = None
        self._state = EngineState.UNINITIALIZED
        self._running = False
        self._lock = Lock()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def active_config(self) -> Optional[ModelConfig]:
        return self._config

    @property
    def loaded_model(self) -> Optional[str]:
        return self._config.name if self._config is not None else None

    @property
    def method(self) -> Optional[str]:
        """Runtime and model of the live session, e.g. ``onnx:u2net``."""
        return self._method

    def initialize(self, source, config: ModelConfig) -> ModelConfig:
        """
        Load `config` from `source` and make it the active session.

        Returns the effective config (its input size may come from the model).
        Raises ModelLoadError on any failure after releasing partial state.
        """
        with self._lock:
            if self._state is EngineState.DISPOSED:
                raise SessionReleasedError("Inference engine has been disposed")
            if self._running or self._state is EngineState.LOADING:
                raise EngineBusyError("Cannot re-initialize while a load or run is in flight")
            self._release_session()
            self._state = EngineState.LOADING

        session: Optional[RuntimeSession] = None
        try:
            handle = source.acquire()
            runtime = self._runtimes.get(handle.format)
            if runtime is None:
                raise ValueError(f"No runtime registered for '{handle.format}' models")
            session = runtime.create_session(handle)
            effective = adopt_declared_input_size(config, session.input_shape)
        except Exception as exc:
            if session is not None:
                self._safe_release(session)
            with self._lock:
                if self._state is EngineState.DISPOSED:
                    raise SessionReleasedError("Inference engine was disposed during load") from exc
                self._state = EngineState.UNINITIALIZED
            raise ModelLoadError(
                f"Failed to load {config.name} model from {source.describe()}: {exc}"
            ) from exc

        with self._lock:
            # dispose() may have run while the model was loading.
            if self._state is EngineState.DISPOSED:
                self._safe_release(session)
                raise SessionReleasedError("Inference engine was disposed during load")
            self._session = session
            self._config = effective
            self._method = f"{runtime.name}:{effective.name}"
            self._state = EngineState.READY
        logger.info(
            "Model %s ready from %s (backend=%s, input=%d)",
            effective.name,
            handle.origin,
            session.backend,
            effective.input_size,
        )
        return effective

    def run(self, tensor: Tensor) -> Tensor:
        with self._lock:
            if self._state is EngineState.DISPOSED:
                raise SessionReleasedError("Inference session has been released")
            if self._state is not EngineState.READY or self._session is None:
                raise ProcessingFailedError("Model session not initialized")
            session = self._session
            self._running = True

        try:
            output = session.run(tensor.as_batch().astype(np.float32, copy=False))
        except Exception as exc:
            raise ProcessingFailedError(f"Inference failed: {exc}") from exc
        finally:
            with self._lock:
                self._running = False

        output = np.asarray(output, dtype=np.float32)
        return Tensor(data=output.reshape(-1), shape=tuple(output.shape))

    def dispose(self) -> None:
        with self._lock:
            if self._state is EngineState.DISPOSED:
                return
            self._release_session()
            self._state = EngineState.DISPOSED
        logger.info("Inference engine disposed")

    def _release_session(self) -> None:
        if self._session is not None:
            self._safe_release(self._session)
        self._session = None
        self._config = None
        self._method = None
        if self._state is EngineState.READY:
            self._state = EngineState.UNINITIALIZED

    @staticmethod
    def _safe_release(session: RuntimeSession) -> None:
        try:
            session.release()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error releasing inference session: %s", exc)
