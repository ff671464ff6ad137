"""
Files fetched by ``gem`` and ``bundler``: the spec fragments, quick
gemspecs and the gem archives themselves.
"""

from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse, Response

from gembox.core.dependencies import get_repository
from gembox.data.index_files import (
    ALL_FRAGMENTS,
    LEGACY_LATEST_INDEX,
    LEGACY_QUICK_INDEX,
    QUICK_DIR,
    fragment_filename,
)
from gembox.domain.entities import Repository
from gembox.domain.errors import ValidationError

router = APIRouter()

_MEDIA_TYPES = {
    ".gz": "application/x-gzip",
    ".rz": "application/x-deflate",
    ".gem": "application/octet-stream",
}


def _media_type(path: Path) -> str:
    return _MEDIA_TYPES.get(path.suffix, "application/octet-stream")


def _serve_index_file(repo: Repository, relative: str) -> Response:
    # Read eagerly: the generation may be pruned before a streamed body is sent.
    for _ in range(2):
        path = repo.indexer.fragment_path(relative)
        if path is None:
            break
        try:
            return Response(content=path.read_bytes(), media_type=_media_type(path))
        except FileNotFoundError:
            continue
    raise HTTPException(status_code=404, detail="Not found")


def _fragment_endpoint(relative: str):
    async def serve_fragment(repo: Repository = Depends(get_repository)) -> Response:
        return _serve_index_file(repo, relative)

    serve_fragment.__name__ = f"serve_{relative.replace('.', '_').replace('/', '_')}"
    return serve_fragment


for _fragment in ALL_FRAGMENTS:
    for _compressed in (True, False):
        _name = fragment_filename(_fragment, compressed=_compressed)
        router.add_api_route(f"/{_name}", _fragment_endpoint(_name), methods=["GET"])

for _legacy in (LEGACY_QUICK_INDEX, LEGACY_LATEST_INDEX):
    for _suffix in ("", ".rz"):
        router.add_api_route(f"/{_legacy}{_suffix}", _fragment_endpoint(f"{_legacy}{_suffix}"), methods=["GET"])


@router.get(f"/{QUICK_DIR}/{{filename}}")
async def quick_gemspec(filename: str, repo: Repository = Depends(get_repository)) -> Response:
    if "/" in filename or not filename.endswith(".gemspec.rz"):
        raise HTTPException(status_code=404, detail="Not found")
    return _serve_index_file(repo, f"{QUICK_DIR}/{filename}")


@router.get("/gems/{filename}")
async def download_gem(filename: str, repo: Repository = Depends(get_repository)) -> FileResponse:
    try:
        path = repo.store.path_for(filename)
    except ValidationError:
        raise HTTPException(status_code=404, detail="Gem not found")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Gem not found")
    return FileResponse(path=str(path), media_type=_media_type(path), filename=path.name)
