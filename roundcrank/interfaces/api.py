from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from roundcrank import __version__
from roundcrank.core.contracts.repositories import MirrorRepository


def get_mirror(request: Request) -> MirrorRepository:
    return request.app.state.mirror


v1_router = APIRouter(prefix="/v1")


@v1_router.get("/rounds/current")
async def current_round(mirror: MirrorRepository = Depends(get_mirror)) -> Dict[str, Any]:
    latest = await mirror.get_latest()
    if latest is None:
        raise HTTPException(status_code=404, detail="No round has been observed yet.")
    return latest.public_view()


@v1_router.get("/rounds/{round_id}")
async def round_by_id(round_id: int, mirror: MirrorRepository = Depends(get_mirror)) -> Dict[str, Any]:
    record = await mirror.get(round_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Round {round_id} not found.")
    return record.public_view()


def create_api_app(mirror: MirrorRepository, *, allow_origins: list[str] | None = None) -> FastAPI:
    """Read-only projection of the game mirror. Exposes no way to influence scheduling."""
    app = FastAPI(title="Round Crank Mirror API", version=__version__)
    app.state.mirror = mirror
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins or ["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    app.include_router(v1_router)
    return app
