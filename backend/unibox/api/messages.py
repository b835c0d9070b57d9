from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from unibox.core import Core, get_core
from unibox.errors import StoreUnavailable
from unibox.schemas.messages import CanonicalMessage, MessageFilter, Platform

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("", response_model=list[CanonicalMessage])
def query_messages(
    platform: Platform | None = Query(None),
    from_id: str | None = Query(None),
    thread_id: str | None = Query(None),
    q: str | None = Query(None, description="Case-insensitive substring over body, subject and sender name"),
    limit: int = Query(100, ge=1, le=500),
    core: Core = Depends(get_core),
):
    """Messages newest-first; unset filters impose no constraint."""
    filters = MessageFilter(
        platform=platform,
        from_id=from_id,
        thread_id=thread_id,
        search_term=q,
        limit=limit,
    )
    try:
        return core.store.query_messages(filters)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.get("/search", response_model=list[CanonicalMessage])
def search_messages(
    q: str = Query(..., min_length=1),
    core: Core = Depends(get_core),
):
    try:
        return core.store.search_messages(q)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))
