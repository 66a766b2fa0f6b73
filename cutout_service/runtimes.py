"""
Inference runtimes the engine can drive.

A runtime turns model bytes into a session; a session runs a single-input,
single-output forward pass on numpy arrays. ONNX Runtime is the default path;
TorchScript archives are served through torch.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Optional, Protocol, Sequence, Tuple, Union

import numpy as np
import onnxruntime as ort
import torch

logger = logging.getLogger(__name__)

Dim = Union[int, str, None]


@dataclass(frozen=True)
class ModelHandle:
    """Model bytes fetched from a source, not yet loaded into a runtime."""

    name: str
    data: bytes
    format: str  # "onnx" | "torchscript"
    origin: str


class RuntimeSession(Protocol):
    backend: str

    @property
    def input_shape(self) -> Optional[Tuple[Dim, ...]]:
        ...

    def run(self, batch: np.ndarray) -> np.ndarray:
        ...

    def release(self) -> None:
        ...


class InferenceRuntime(Protocol):
    name: str

    def create_session(self, handle: ModelHandle) -> RuntimeSession:
        ...


# Accelerated providers first; CPU is always appended as the guaranteed fallback.
PREFERRED_PROVIDERS = (
    "CUDAExecutionProvider",
    "CoreMLExecutionProvider",
    "CPUExecutionProvider",
)


def negotiate_providers(
    available: Sequence[str], preferred: Sequence[str] = PREFERRED_PROVIDERS
) -> list:
    resolved = [p for p in preferred if p in available and p != "CPUExecutionProvider"]
    resolved.append("CPUExecutionProvider")
    return resolved


class OnnxSession:
    def __init__(self, session: "ort.InferenceSession") -> None:
        self._session = session
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if not inputs or not outputs:
            raise RuntimeError("ONNX model declares no inputs or outputs")
        self._input_name = inputs[0].name
        self._output_name = outputs[0].name
        self._input_shape = tuple(inputs[0].shape)
        self.backend = session.get_providers()[0]

    @property
    def input_shape(self) -> Optional[Tuple[Dim, ...]]:
        return self._input_shape

    def run(self, batch: np.ndarray) -> np.ndarray:
        if self._session is None:
            raise RuntimeError("ONNX session already released")
        outputs = self._session.run([self._output_name], {self._input_name: batch})
        return np.asarray(outputs[0])

    def release(self) -> None:
        # onnxruntime frees native memory when the session is collected.
        self._session = None


class OnnxRuntime:
    name = "onnx"

    def __init__(self, preferred_providers: Sequence[str] = PREFERRED_PROVIDERS) -> None:
        self._preferred = tuple(preferred_providers)

    def create_session(self, handle: ModelHandle) -> OnnxSession:
        so = ort.SessionOptions()
        so.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        so.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
        providers = negotiate_providers(ort.get_available_providers(), self._preferred)
        logger.info("Creating ONNX session for %s with providers %s", handle.name, providers)
        session = ort.InferenceSession(handle.data, sess_options=so, providers=providers)
        return OnnxSession(session)


def select_torch_device() -> torch.device:
    # Prefer CUDA -> Apple MPS -> CPU to support both GPU servers and local macOS dev.
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


class TorchScriptSession:
    def __init__(self, module: torch.nn.Module, device: torch.device) -> None:
        self._module = module
        self._device = device
        self.backend = f"torch:{device.type}"

    @property
    def input_shape(self) -> Optional[Tuple[Dim, ...]]:
        # TorchScript archives carry no static input signature.
        return None

    def run(self, batch: np.ndarray) -> np.ndarray:
        if self._module is None:
            raise RuntimeError("TorchScript module already released")
        with torch.no_grad():
            output = self._module(torch.from_numpy(batch).to(self._device))
        if isinstance(output, (tuple, list)):
            output = output[0]
        return output.detach().cpu().numpy()

    def release(self) -> None:
        self._module = None
        if self._device.type == "cuda":
            torch.cuda.empty_cache()


class TorchScriptRuntime:
    name = "torchscript"

    def __init__(self, device: Optional[torch.device] = None) -> None:
        self._device = device

    def create_session(self, handle: ModelHandle) -> TorchScriptSession:
        device = self._device or select_torch_device()
        logger.info("Loading TorchScript model %s on %s", handle.name, device)
        module = torch.jit.load(BytesIO(handle.data), map_location=device)
        module.eval()
        return TorchScriptSession(module, device)


def default_runtimes() -> dict:
    return {OnnxRuntime.name: OnnxRuntime(), TorchScriptRuntime.name: TorchScriptRuntime()}
