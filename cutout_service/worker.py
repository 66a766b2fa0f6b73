"""
Off-thread inference.

`EngineWorker` owns an `InferenceEngine` on a dedicated thread and talks to it
through a request/response channel: typed `InitRequest`, `ProcessRequest` and
`DisposeRequest` messages in, a completed or failed `Future` out. It exposes
the engine's own surface so the pipeline can use either interchangeably.
"""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
import logging
import queue
import threading
from typing import Optional, Union

from .engine import EngineState, InferenceEngine
from .errors import SessionReleasedError
from .models import ModelConfig, Tensor

logger = logging.getLogger(__name__)


@dataclass
class InitRequest:
    source: object
    config: ModelConfig
    reply: Future = field(default_factory=Future)


@dataclass
class ProcessRequest:
    tensor: Tensor
    reply: Future = field(default_factory=Future)


@dataclass
class DisposeRequest:
    reply: Future = field(default_factory=Future)


Request = Union[InitRequest, ProcessRequest, DisposeRequest]


class EngineWorker:
    def __init__(self, engine: Optional[InferenceEngine] = None, name: str = "inference-worker") -> None:
        self._engine = engine or InferenceEngine()
        self._requests: "queue.Queue[Request]" = queue.Queue()
        self._closed = False
        self._submit_lock = threading.Lock()
        self._thread = threading.Thread(target=self._serve, name=name, daemon=True)
        self._thread.start()

    @property
    def state(self) -> EngineState:
        return self._engine.state

    @property
    def active_config(self) -> Optional[ModelConfig]:
        return self._engine.active_config

    @property
    def loaded_model(self) -> Optional[str]:
        return self._engine.loaded_model

    @property
    def method(self) -> Optional[str]:
        return self._engine.method

    def initialize(self, source, config: ModelConfig) -> ModelConfig:
        return self._submit(InitRequest(source=source, config=config))

    def run(self, tensor: Tensor) -> Tensor:
        return self._submit(ProcessRequest(tensor=tensor))

    def dispose(self) -> None:
        with self._submit_lock:
            if self._closed:
                return
            request = DisposeRequest()
            self._requests.put(request)
            self._closed = True
        request.reply.result()
        self._thread.join()

    def _submit(self, request: Request):
        with self._submit_lock:
            if self._closed:
                raise SessionReleasedError("Inference worker has been disposed")
            self._requests.put(request)
        return request.reply.result()

    def _serve(self) -> None:
        while True:
            request = self._requests.get()
            try:
                if isinstance(request, InitRequest):
                    result = self._engine.initialize(request.source, request.config)
                elif isinstance(request, ProcessRequest):
                    result = self._engine.run(request.tensor)
                else:
                    self._engine.dispose()
                    result = None
            except Exception as exc:  # noqa: BLE001
                request.reply.set_exception(exc)
            else:
                request.reply.set_result(result)
            if isinstance(request, DisposeRequest):
                logger.debug("Inference worker stopped")
                return
