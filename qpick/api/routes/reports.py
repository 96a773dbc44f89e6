"""Found/not-found report routes."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from qpick import metrics
from qpick.api.deps import get_database, get_dispatcher
from qpick.config import settings
from qpick.errors import DuplicateReportError, InvalidInputError, StorageError
from qpick.notify.dispatcher import NotificationDispatcher
from qpick.reports.store import report_store
from qpick.scoring.availability import ReportStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reports", tags=["reports"])


class ReportCreate(BaseModel):
    store_id: str
    product_id: int
    status: str
    session_id: str | None = None
    origin: str | None = None


class ReportResponse(BaseModel):
    ok: bool
    already_voted: bool | None = None
    report_id: int | None = None


@router.post("", response_model=ReportResponse, response_model_exclude_none=True)
async def submit_report(
    report: ReportCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_database),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Record a found/not-found report.

    A repeat report from the same session is answered as already voted. A
    found report is handed to the notification dispatcher after the
    response is sent.
    """
    try:
        event = await report_store.submit_report(
            db,
            store_id=report.store_id,
            product_id=report.product_id,
            status=report.status,
            session_id=report.session_id,
            origin=report.origin,
        )
    except InvalidInputError as e:
        metrics.record_report(report.status, "invalid")
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicateReportError:
        metrics.record_report(report.status, "already_voted")
        return ReportResponse(ok=True, already_voted=True)
    except StorageError as e:
        metrics.record_report(report.status, "error")
        logger.error(f"Failed to save report: {e}")
        raise HTTPException(status_code=500, detail="Failed to save report")

    metrics.record_report(event.status, "accepted")

    if settings.dispatch_on_submit and event.status == ReportStatus.FOUND.value:
        background_tasks.add_task(dispatcher.dispatch_report, event)

    return ReportResponse(ok=True, report_id=event.id)
