"""
FastAPI layer exposing the background-removal pipeline.

Endpoints:
 - GET /health
 - POST /remove-bg
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, HttpUrl
import requests

from . import config
from .errors import ApiError, ErrorKind, ProcessingError
from .models import ProcessingOptions
from .pipeline import BackgroundRemover, build_remover

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.INVALID_IMAGE: 400,
    ErrorKind.SIZE_LIMIT_EXCEEDED: 413,
    ErrorKind.MODEL_LOAD_FAILED: 503,
    ErrorKind.PROCESSING_FAILED: 500,
    ErrorKind.API_ERROR: 502,
}


class RemoveBgRequest(BaseModel):
    imageUrl: HttpUrl
    quality: Optional[str] = None
    model: Optional[str] = None
    outputFormat: Optional[str] = None
    featherRadius: Optional[int] = None


def _download_image(url: str, timeout: int) -> bytes:
    try:
        resp = requests.get(url, timeout=(5, timeout))
        resp.raise_for_status()
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else None
        raise ApiError(f"Could not download image: {exc}", status_code=status) from exc
    except requests.RequestException as exc:
        raise ApiError(f"Could not download image: {exc}") from exc
    return resp.content


def create_app(
    remover: Optional[BackgroundRemover] = None,
    settings: Optional[config.Settings] = None,
) -> FastAPI:
    settings = settings or config.get_settings()
    remover = remover or build_remover(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        remover.close()

    app = FastAPI(title="Cutout Background Removal Service", version="0.1.0", lifespan=lifespan)
    app.state.remover = remover

    @app.get("/health")
    def health():
        engine = remover.engine
        return {"status": "ok", "engine": engine.state.value, "model": engine.loaded_model}

    @app.post("/remove-bg")
    def remove_bg(body: RemoveBgRequest):
        try:
            options = ProcessingOptions(
                quality=body.quality or settings.default_quality,
                model=body.model,
                output_format=body.outputFormat or "png",
                feather_radius=body.featherRadius or 0,
            )
        except ValueError as ve:
            raise HTTPException(status_code=400, detail=str(ve)) from ve

        try:
            image_bytes = _download_image(str(body.imageUrl), settings.request_timeout_seconds)
            result = remover.remove_background(image_bytes, options)
        except ProcessingError as exc:
            if exc.kind in (ErrorKind.PROCESSING_FAILED, ErrorKind.MODEL_LOAD_FAILED):
                logger.error("Background removal failed: %s", exc.message)
            raise HTTPException(status_code=STATUS_BY_KIND[exc.kind], detail=exc.to_dict()) from exc

        return Response(
            content=result.output,
            media_type=result.media_type,
            headers={
                "X-Processing-Time-Ms": f"{result.processing_time_ms:.1f}",
                "X-Method": result.method_used,
                "X-Image-Width": str(result.width),
                "X-Image-Height": str(result.height),
            },
        )

    return app


def _configure_logging() -> None:
    settings = config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))


_configure_logging()
app = create_app()
