from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, status

from unibox.config import settings
from unibox.core import Core, get_core
from unibox.errors import StoreUnavailable, UnknownPlatform
from unibox.schemas.messages import IngestResultSchema

router = APIRouter(tags=["ingest"])


def _verify_ingest_key(x_ingest_key: str | None = Header(default=None)) -> None:
    if not x_ingest_key or x_ingest_key != settings.INGEST_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing X-Ingest-Key header",
        )


@router.post(
    "/ingest",
    response_model=IngestResultSchema,
    dependencies=[Depends(_verify_ingest_key)],
)
def ingest_message(
    payload: dict[str, Any] | list[Any] = Body(...),
    core: Core = Depends(get_core),
):
    """Ingest one canonical message or a list of them."""
    try:
        result = core.pipeline.ingest_message(payload)
    except UnknownPlatform as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return result.to_schema()


@router.post(
    "/ingest/{platform}",
    response_model=IngestResultSchema,
    dependencies=[Depends(_verify_ingest_key)],
)
def ingest_native(
    platform: str,
    payload: dict[str, Any] | list[Any] = Body(...),
    core: Core = Depends(get_core),
):
    """Ingest a platform-native payload or batch, e.g. a Gmail message resource."""
    try:
        result = core.pipeline.ingest(platform, payload)
    except UnknownPlatform as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return result.to_schema()
