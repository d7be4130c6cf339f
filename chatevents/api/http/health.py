"""HTTP API layer: liveness plus store and stream counters."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from chatevents.api.deps import get_container
from chatevents.core.container import AppContainer

router = APIRouter(tags=["health"])


@router.get("/health")
def health(container: AppContainer = Depends(get_container)) -> dict:
    store = container.store
    return {
        "status": "disposed" if store.disposed else "ok",
        "version": container.settings.app_version,
        "env": container.settings.env,
        "store": {} if store.disposed else store.debug_info(),
        "active_streams": len(container.ingestors.session_ids()),
    }
