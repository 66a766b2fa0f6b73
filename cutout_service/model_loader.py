"""
Model acquisition.

The loader:
 - describes each place a model can come from as a `ModelSource`
   (a local file, or a URL fetched once and cached on disk),
 - tries the candidates for a model in order through the engine,
   first success wins,
 - remembers which source worked so later calls do not search again.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

import requests

from .config import Settings
from .errors import EngineBusyError, ModelLoadError, SessionReleasedError
from .models import ModelConfig
from .runtimes import ModelHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")
C = TypeVar("C")

TORCHSCRIPT_SUFFIXES = {".pt", ".pth", ".torchscript"}


def model_format(name: str) -> str:
    suffix = Path(name).suffix.lower()
    if suffix in TORCHSCRIPT_SUFFIXES:
        return "torchscript"
    return "onnx"


class ModelSource(Protocol):
    def describe(self) -> str:
        ...

    def acquire(self) -> ModelHandle:
        ...

    def invalidate(self) -> None:
        """Forget anything cached after the runtime rejected the model."""
        ...


class LocalFileSource:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def describe(self) -> str:
        return str(self.path)

    def acquire(self) -> ModelHandle:
        if not self.path.is_file():
            raise FileNotFoundError(f"Model file not found at {self.path}")
        return ModelHandle(
            name=self.path.name,
            data=self.path.read_bytes(),
            format=model_format(self.path.name),
            origin=str(self.path),
        )

    def invalidate(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"LocalFileSource({self.path})"


class RemoteUrlSource:
    """Fetch model bytes from a URL; the download is cached under `cache_dir`."""

    def __init__(self, url: str, cache_dir: Optional[Path] = None, timeout: int = 60) -> None:
        self.url = url
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.timeout = timeout

    def describe(self) -> str:
        return self.url

    @property
    def filename(self) -> str:
        return self.url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0] or "model.onnx"

    def _cache_path(self) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        digest = hashlib.sha256(self.url.encode("utf-8")).hexdigest()[:12]
        return self.cache_dir / f"{digest}-{self.filename}"

    def acquire(self) -> ModelHandle:
        cache_path = self._cache_path()
        if cache_path is not None and cache_path.is_file():
            logger.info("Using cached model %s for %s", cache_path, self.url)
            data = cache_path.read_bytes()
        else:
            logger.info("Downloading model from %s", self.url)
            resp = requests.get(self.url, timeout=(5, self.timeout))
            resp.raise_for_status()
            data = resp.content
            if not data:
                raise ValueError(f"Empty model download from {self.url}")
            if cache_path is not None:
                self._write_cache(cache_path, data)
        return ModelHandle(
            name=self.filename,
            data=data,
            format=model_format(self.filename),
            origin=self.url,
        )

    def invalidate(self) -> None:
        cache_path = self._cache_path()
        if cache_path is None or not cache_path.is_file():
            return
        logger.warning("Discarding cached model %s for %s", cache_path, self.url)
        try:
            cache_path.unlink()
        except OSError as exc:
            logger.warning("Could not remove cached model %s: %s", cache_path, exc)

    @staticmethod
    def _write_cache(path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".part")
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as exc:
            logger.warning("Could not cache model at %s: %s", path, exc)

    def __repr__(self) -> str:
        return f"RemoteUrlSource({self.url})"


class AllCandidatesFailed(Exception):
    def __init__(self, failures: List[Tuple[object, Exception]]) -> None:
        self.failures = failures
        last = failures[-1][1] if failures else None
        super().__init__(f"All {len(failures)} candidates failed. Last error: {last}")


def first_success(
    candidates: Iterable[C],
    attempt: Callable[[C], T],
    propagate: Tuple[type, ...] = (),
) -> Tuple[C, T, List[Tuple[C, Exception]]]:
    """
    Run `attempt` on each candidate in order and return the first success.

    Returns (candidate, value, failures before it). Raises AllCandidatesFailed
    with every (candidate, error) pair when nothing succeeds.
    Exceptions of the `propagate` types stop the search and are re-raised.
    """
    failures: List[Tuple[C, Exception]] = []
    for candidate in candidates:
        try:
            value = attempt(candidate)
        except propagate:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Candidate %s failed: %s", candidate, exc)
            failures.append((candidate, exc))
            continue
        return candidate, value, failures
    raise AllCandidatesFailed(failures)


# Engine state errors end the search instead of counting as a source failure.
ENGINE_STATE_ERRORS = (SessionReleasedError, EngineBusyError)

SourceFactory = Callable[[ModelConfig], Sequence[ModelSource]]


def default_source_factory(settings: Settings) -> SourceFactory:
    """Local files first (primary, then reduced variant), CDN last."""

    def build(config: ModelConfig) -> List[ModelSource]:
        sources: List[ModelSource] = [
            LocalFileSource(settings.model_dir / filename) for filename in config.filenames
        ]
        url = config.source_url
        if url is None and settings.model_cdn_base_url and config.filenames:
            url = settings.model_cdn_base_url.rstrip("/") + "/" + config.filenames[0]
        if url:
            sources.append(
                RemoteUrlSource(
                    url,
                    cache_dir=settings.model_cache_dir,
                    timeout=settings.model_fetch_timeout_seconds,
                )
            )
        return sources

    return build


class ModelAcquisition:
    """Ensure an engine holds a working session for a model, searching sources once."""

    def __init__(self, source_factory: SourceFactory) -> None:
        self._source_factory = source_factory
        self._resolved: Dict[str, ModelSource] = {}
        self._last_failures: List[Tuple[str, str]] = []
        self._lock = Lock()

    @property
    def last_failures(self) -> List[Tuple[str, str]]:
        """(source, message) pairs that failed during the most recent search."""
        return list(self._last_failures)

    def resolved_source(self, model_name: str) -> Optional[ModelSource]:
        return self._resolved.get(model_name)

    def ensure(self, engine, config: ModelConfig) -> ModelConfig:
        """Make `config` the engine's active model and return the effective config."""
        with self._lock:
            if engine.loaded_model == config.name and engine.active_config is not None:
                return engine.active_config

            cached = self._resolved.get(config.name)
            if cached is not None:
                try:
                    return self._initialize(engine, cached, config)
                except ModelLoadError as exc:
                    logger.warning(
                        "Cached source %s for %s stopped working: %s",
                        cached.describe(),
                        config.name,
                        exc,
                    )
                    del self._resolved[config.name]

            candidates = list(self._source_factory(config))
            if not candidates:
                raise ModelLoadError(f"No model sources configured for {config.name}")

            try:
                source, effective, failures = first_success(
                    candidates,
                    lambda src: self._initialize(engine, src, config),
                    propagate=ENGINE_STATE_ERRORS,
                )
            except AllCandidatesFailed as exc:
                self._last_failures = [(c.describe(), str(e)) for c, e in exc.failures]
                last_message = self._last_failures[-1][1]
                logger.error("All model loading attempts failed for %s", config.name)
                raise ModelLoadError(
                    f"Failed to initialize any {config.name} model "
                    f"({len(exc.failures)} sources tried). Last error: {last_message}",
                    failures=self._last_failures,
                ) from exc.failures[-1][1]

            self._last_failures = [(c.describe(), str(e)) for c, e in failures]
            if failures:
                logger.info(
                    "Loaded %s from %s after %d failed attempts",
                    config.name,
                    source.describe(),
                    len(failures),
                )
            self._resolved[config.name] = source
            return effective

    @staticmethod
    def _initialize(engine, source: ModelSource, config: ModelConfig) -> ModelConfig:
        try:
            return engine.initialize(source, config)
        except ModelLoadError:
            source.invalidate()
            raise
