"""
Monitoring dashboard — /api/v1/monitoring

    GET /heatmap       control health by latest test result
    GET /posture       per-framework compliance posture
    GET /summary       dashboard counters
    GET /alert-queue   alerts ordered by severity then SLA deadline
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user
from grc_api.pagination import Page, paginate
from grc_api.responses import envelope
from grc_api.services.monitoring import (
    QUEUES, alert_queue, compliance_posture, control_heatmap, monitoring_summary,
)

router = APIRouter(prefix="/api/v1/monitoring", tags=["Monitoring"])


@router.get("/heatmap")
async def get_heatmap(
    category: str | None = Query(None),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    return envelope(await control_heatmap(s, user.org_id, category))


@router.get("/posture")
async def get_posture(
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    return envelope(await compliance_posture(s, user.org_id))


@router.get("/summary")
async def get_summary(
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    return envelope(await monitoring_summary(s, user.org_id))


@router.get("/alert-queue")
async def get_alert_queue(
    queue: str = Query("active", description=" | ".join(QUEUES)),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    queue_summary, alerts, total = await alert_queue(s, user.org_id, queue, page.offset, page.per_page)
    return envelope(
        {"queue_summary": queue_summary, "alerts": alerts},
        total=total, page=page.page, per_page=page.per_page,
    )
