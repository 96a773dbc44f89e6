"""Store/product comment routes."""

import logging
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from qpick.api.deps import get_database
from qpick.errors import InvalidInputError, StorageError
from qpick.reports.store import report_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/comments", tags=["comments"])


class CommentCreate(BaseModel):
    store_id: str
    product_id: int
    comment: str


class CommentResponse(BaseModel):
    id: int
    body: str
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("", status_code=201)
async def create_comment(
    data: CommentCreate, db: AsyncSession = Depends(get_database)
):
    """Submit a comment. It is shown only after moderation."""
    try:
        comment = await report_store.add_comment(db, data.store_id, data.product_id, data.comment)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        logger.error(f"Failed to save comment: {e}")
        raise HTTPException(status_code=500, detail="Failed to save comment")

    return {"ok": True, "id": comment.id}


@router.get("", response_model=List[CommentResponse])
async def list_comments(
    store_id: str = Query(...),
    product_id: int = Query(...),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_database),
):
    """Approved comments for a store/product pair, newest first."""
    return await report_store.approved_comments(db, store_id, product_id, limit=limit)
