from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from unibox.core import Core, get_core
from unibox.errors import StoreUnavailable
from unibox.schemas.messages import ConversationSchema

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=list[ConversationSchema])
def list_conversations(core: Core = Depends(get_core)):
    """Non-archived conversations, most recent activity first."""
    try:
        return core.store.list_conversations()
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))
