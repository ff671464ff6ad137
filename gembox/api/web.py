"""
HTML endpoints: gem listing, Atom feed, upload/delete/reindex, and lazily
generated documentation.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, HTMLResponse, PlainTextResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from gembox.core.dependencies import get_repository
from gembox.data.version_collection import group_key
from gembox.domain.entities import Repository
from gembox.domain.errors import (
    ConflictError,
    DocGenerationError,
    IndexRebuildError,
    StorageError,
    ValidationError,
)
from gembox.domain.models import PutStatus

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
templates.env.filters["group_key"] = group_key

DUPLICATE_MESSAGE = "Ignoring upload, you uploaded the same thing previously."
DOCS_RETRY_AFTER_SECONDS = 30

router = APIRouter()


def error_response(request: Request, code: int, message: str) -> HTMLResponse:
    """Minimal HTML error page used for client-visible failures."""
    return templates.TemplateResponse(
        request,
        "error.html",
        {"code": code, "message": message},
        status_code=code,
    )


def _redirect_home(request: Request) -> RedirectResponse:
    return RedirectResponse(url=str(request.url_for("index")), status_code=status.HTTP_303_SEE_OTHER)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse, name="index")
async def index(request: Request, repo: Repository = Depends(get_repository)) -> HTMLResponse:
    """
    Gem listing grouped by name, with an alphabetical jump index.
    """
    gems = await run_in_threadpool(repo.load_gems)
    listing = await run_in_threadpool(repo.listing, gems)
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "gems": gems,
            "listing": listing,
            "index_gems": sorted(repo.index_gems(gems)),
        },
    )


@router.get("/atom.xml")
async def atom(request: Request, repo: Repository = Depends(get_repository)) -> Response:
    gems = await run_in_threadpool(repo.load_gems)
    listing = await run_in_threadpool(repo.listing, gems)
    return templates.TemplateResponse(
        request,
        "atom.xml",
        {"listing": listing, "updated": repo.indexer.last_rebuilt_at},
        media_type="application/atom+xml",
    )


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


@router.get("/upload", response_class=HTMLResponse)
async def upload_form(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "upload.html", {"error": None})


@router.post("/upload")
async def upload(
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    repo: Repository = Depends(get_repository),
) -> Response:
    """
    Store an uploaded gem and refresh the index.

    200 for a duplicate of an already stored gem, 409 for a conflicting one,
    a plain-text 500 when storage or the index refresh fails.
    """
    if file is None or not file.filename:
        return templates.TemplateResponse(
            request, "upload.html", {"error": "No file selected"}, status_code=400
        )

    limit = repo.config.max_upload_bytes
    content = await file.read(limit + 1)
    if len(content) > limit:
        return error_response(request, 413, f"Gem is larger than the {limit} byte upload limit.")

    try:
        result = await run_in_threadpool(repo.upload, file.filename, content)
    except ConflictError as e:
        return error_response(request, 409, str(e))
    except ValidationError as e:
        return templates.TemplateResponse(
            request, "upload.html", {"error": str(e)}, status_code=400
        )
    except StorageError as e:
        logger.error(f"Upload of {file.filename} failed: {e}")
        return PlainTextResponse(str(e), status_code=500)
    except IndexRebuildError as e:
        logger.error(f"Upload of {file.filename} stored but not indexed: {e}")
        return PlainTextResponse(str(e), status_code=500)

    if result.status == PutStatus.DUPLICATE:
        return PlainTextResponse(DUPLICATE_MESSAGE, status_code=200)
    return _redirect_home(request)


# ---------------------------------------------------------------------------
# Reindex / delete
# ---------------------------------------------------------------------------


@router.get("/reindex")
async def reindex(request: Request, repo: Repository = Depends(get_repository)) -> Response:
    try:
        await run_in_threadpool(repo.reindex)
    except IndexRebuildError as e:
        return PlainTextResponse(str(e), status_code=500)
    return _redirect_home(request)


async def _delete_gem(request: Request, filename: str, repo: Repository) -> Response:
    try:
        await run_in_threadpool(repo.delete, filename)
    except ValidationError:
        raise HTTPException(status_code=404, detail="Gem not found")
    except (StorageError, IndexRebuildError) as e:
        return PlainTextResponse(str(e), status_code=500)
    return _redirect_home(request)


@router.delete("/gems/{filename}")
async def delete_gem(
    filename: str, request: Request, repo: Repository = Depends(get_repository)
) -> Response:
    return await _delete_gem(request, filename, repo)


@router.post("/gems/{filename}")
async def delete_gem_form(
    filename: str,
    request: Request,
    method: str = Form(default="", alias="_method"),
    repo: Repository = Depends(get_repository),
) -> Response:
    """HTML forms cannot send DELETE; they post ``_method=DELETE`` instead."""
    if method.upper() != "DELETE":
        raise HTTPException(status_code=405, detail="Method not allowed")
    return await _delete_gem(request, filename, repo)


# ---------------------------------------------------------------------------
# Documentation
# ---------------------------------------------------------------------------


@router.get("/docs/{name}")
async def docs_root(name: str) -> RedirectResponse:
    return RedirectResponse(url=f"/docs/{name}/index.html", status_code=status.HTTP_303_SEE_OTHER)


@router.get("/docs/{name}/{rest_path:path}")
async def docs_file(name: str, rest_path: str, repo: Repository = Depends(get_repository)) -> FileResponse:
    """
    Serve a file from the gem's generated documentation, building it on the
    first request.
    """
    try:
        path = await run_in_threadpool(repo.docs_file, name, rest_path)
    except (ValidationError, FileNotFoundError):
        raise HTTPException(status_code=404, detail="Not found")
    except DocGenerationError as e:
        logger.error(f"Documentation for {name} unavailable: {e}")
        raise HTTPException(
            status_code=503,
            detail=f"Documentation could not be generated: {e}",
            headers={"Retry-After": str(DOCS_RETRY_AFTER_SECONDS)},
        )
    return FileResponse(path=str(path))
