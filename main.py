"""
Thermal Matrix API
- Radiometric image upload
- Single pixel temperature lookup
- Aggregate statistics and full matrix export
"""
import sys
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from loguru import logger
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData, UploadFile

from config import Settings
from errors import ClientInputError, EmptyDecodeError, ThermalAPIError, UnhandledProcessingError
from models import ExtractParams, Transport
from thermal import binary_headers, compute_stats, encode_matrix, lookup_pixel, matrix_payload
from thermal_sdk import DjiThermalDecoder, ThermalDecoder

router = APIRouter()


def configure_logging(settings: Settings):
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)


# ============ DEPENDENCIES ============

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_decoder(request: Request) -> ThermalDecoder:
    return request.app.state.decoder


async def read_form(request: Request) -> AsyncIterator[FormData]:
    """Parsed request body; uploaded files are closed once the response is built"""
    form = await request.form()
    try:
        yield form
    finally:
        await form.close()


async def thermal_error_handler(request: Request, exc: ThermalAPIError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============ HEALTH CHECK ============

@router.get("/", response_class=PlainTextResponse)
async def root():
    """Liveness check"""
    return "Thermal Matrix API running"


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


# ============ THERMAL PROCESSING ============

@router.post("/extract-thermal")
async def extract_thermal(
    request: Request,
    settings: Settings = Depends(get_settings),
    decoder: ThermalDecoder = Depends(get_decoder),
    form: FormData = Depends(read_form),
):
    """
    Decode an uploaded radiometric image (multipart field 'image').

    With both x and y: temperature of that pixel (JSON).
    Without: statistics over all valid pixels (JSON), optionally with the
    full matrix, or the bare matrix as an octet stream (transport=binary).
    """
    image = form.get("image")
    if not isinstance(image, UploadFile):
        raise ClientInputError("Missing file 'image'.")

    # body fields take precedence over the query string
    fields = dict(request.query_params)
    fields.update({k: v for k, v in form.items() if isinstance(v, str)})
    params = ExtractParams.from_fields(fields, default_scale=settings.default_scale)

    content = await image.read()
    if not content:
        raise ClientInputError("Empty file 'image'.")

    try:
        matrix = await run_in_threadpool(decoder.decode, content)
        if matrix.samples.size == 0:
            raise EmptyDecodeError()

        logger.info(
            f"Decoded {image.filename}: {matrix.width}x{matrix.height}, "
            f"{matrix.samples.size} samples"
        )
        emissivity = params.resolve_emissivity(matrix.parameters)

        # MODE 1: single pixel
        if params.has_coordinates:
            return JSONResponse(lookup_pixel(matrix, params.x, params.y, params.scale, emissivity))

        # MODE 2: full matrix as octet stream
        if params.transport == Transport.BINARY:
            return Response(
                content=encode_matrix(matrix, params.scale, params.format),
                media_type="application/octet-stream",
                headers=binary_headers(matrix, params.scale, params.format),
            )

        # MODE 2: statistics (JSON)
        summary = compute_stats(
            matrix,
            params.scale,
            method=params.stats or settings.stats_method,
            preview_limit=settings.preview_limit,
            trim_lower=settings.trim_lower,
            trim_upper=settings.trim_upper,
        )
        body = {
            "width": matrix.width,
            "height": matrix.height,
            "scale": params.scale,
            "emissivity": emissivity,
            "parameters": matrix.parameters,
            **summary,
        }
        if params.include_raw_data:
            body.update(matrix_payload(matrix, params.scale, params.format, params.raw_encoding))

        return JSONResponse(body)
    except ThermalAPIError:
        raise
    except Exception as e:
        logger.exception(f"Error in /extract-thermal: {e}")
        raise UnhandledProcessingError(details=str(e)) from e


# ============ APP ============

def create_app(settings: Optional[Settings] = None, decoder: Optional[ThermalDecoder] = None) -> FastAPI:
    """
    Build the API.

    Args:
        settings: Runtime configuration (defaults to the environment)
        decoder: Thermal decoder; defaults to the flirimageextractor-backed one,
            which loads its native SDK lazily on first request
    """
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = FastAPI(
        title="Thermal Matrix API",
        description="Radiometric image decoding, pixel lookup and temperature statistics",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.decoder = decoder or DjiThermalDecoder(exiftool_path=settings.exiftool_path)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Width", "X-Height", "X-Scale", "X-Format", "X-Unit", "X-Byte-Order"],
    )
    app.add_exception_handler(ThermalAPIError, thermal_error_handler)
    app.include_router(router)

    logger.info(
        f"Thermal Matrix API configured: default scale {settings.default_scale}, "
        f"stats method {settings.stats_method.value}, preview limit {settings.preview_limit}"
    )
    return app


if __name__ == "__main__":
    import uvicorn

    app = create_app()
    logger.info(f"Thermal Matrix API listening on {app.state.settings.host}:{app.state.settings.port}")
    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)
