"""HTTP API consumed by the direxpo web UI.

- ``POST /api/run``: export the selected (or discovered) files to Markdown;
- ``GET /api/tree/children``: one level of the directory tree for the picker;
- ``GET /api/download/{filename}``: fetch a generated document;
- ``GET /api/health``: liveness probe.

Errors are returned as ``{"error": message}``.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError

from direxpo import __version__
from direxpo.config import TreeResponse, normalize_rel
from direxpo.exceptions import DirexpoError, InvalidRequestError, NotFoundError
from direxpo.file_manipulation import (
    is_regular_file,
    list_tree_children,
    parse_exclude_patterns,
    resolve_root,
    resolve_within_root,
)
from direxpo.logging import logger
from direxpo.pipeline import run_export
from direxpo.settings import ExportOptions, Settings, load_settings

if TYPE_CHECKING:
    from pathlib import Path

DISCONNECT_POLL_SECONDS = 0.25

router = APIRouter()


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "Invalid options: " + "; ".join(parts)


async def parse_run_options(request: Request) -> ExportOptions:
    """Read and validate the ``options`` object of a run request.

    Raises:
        InvalidRequestError: if the body is not JSON, has no options object, has no
            target path or fails validation.
    """
    try:
        body: Any = await request.json()
    except ValueError as e:
        raise InvalidRequestError(message="Request body must be valid JSON.") from e
    if not isinstance(body, dict) or not isinstance(body.get("options"), dict):
        raise InvalidRequestError(message="Request body must contain an options object.")

    options = body["options"]
    target_path = options.get("targetPath")
    if not isinstance(target_path, str) or not target_path.strip():
        raise InvalidRequestError(message="targetPath is required and must be a non-empty string.")
    try:
        return ExportOptions.model_validate(options)
    except ValidationError as e:
        raise InvalidRequestError(message=_format_validation_error(e)) from e


async def watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    """Set `cancel` once the client goes away."""
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("client_disconnected", path=request.url.path)
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.post("/run")
async def run(request: Request) -> JSONResponse:
    options = await parse_run_options(request)
    logger.info(
        "run_requested",
        target_path=options.target_path,
        selection=options.selection_payload is not None,
        tree_only=options.tree_only,
        include_tree=options.include_tree,
    )

    cancel = asyncio.Event()
    watcher = asyncio.create_task(watch_disconnect(request, cancel))
    try:
        result = await run_export(options, _settings(request), cancel=cancel)
    except DirexpoError:
        raise
    except Exception as e:
        logger.exception("run_failed", target_path=options.target_path)
        return JSONResponse(status_code=500, content={"error": str(e) or e.__class__.__name__})
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
    return JSONResponse(content=result.model_dump(by_alias=True, mode="json"))


@router.get("/tree/children")
async def tree_children(
    root: str | None = None,
    rel: str = "",
    filter_name: str = Query(default="all", alias="filter"),
    exclude: str = "",
) -> JSONResponse:
    if not root or not root.strip():
        raise InvalidRequestError(message="root parameter is required")
    root_abs = resolve_root(root)
    rel_path = normalize_rel(rel)
    nodes = await list_tree_children(
        root_abs,
        rel_path,
        filter_name=filter_name,
        exclude=parse_exclude_patterns(exclude),
    )
    response = TreeResponse(root=str(root_abs), rel=rel_path, nodes=nodes)
    return JSONResponse(content=response.model_dump(by_alias=True, exclude_none=True))


@router.get("/download/{filename}")
async def download(filename: str, request: Request) -> FileResponse:
    output_dir: Path = _settings(request).output_dir.resolve()
    path = None if "/" in filename or "\\" in filename else resolve_within_root(output_dir, filename)
    if path is None or path == output_dir or path.suffix != ".md" or not is_regular_file(path):
        raise NotFoundError(message=f"File not found: {filename}")
    return FileResponse(path, media_type="text/markdown; charset=utf-8", filename=path.name)


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}


async def direxpo_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, DirexpoError):  # pragma: no cover
        raise exc
    if exc.status_code >= 500:  # noqa: PLR2004
        logger.error("request_failed", error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings (Settings | None): server settings; loaded from the environment when None.

    Returns:
        FastAPI: the application, with its routes mounted under ``/api``
    """
    settings = settings or load_settings()
    settings.output_dir.mkdir(parents=True, exist_ok=True)

    app = FastAPI(title="direxpo", version=__version__)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(DirexpoError, direxpo_error_handler)
    app.include_router(router, prefix="/api")
    return app
