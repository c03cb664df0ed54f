"""Risk analytics — /api/v1/risks/heat-map, /gaps, /stats (read-only)."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user, require_roles
from grc_api.pagination import Page, paginate
from grc_api.responses import envelope
from grc_api.services.risk_analytics import find_gaps, gap_summary, heat_map, risk_stats

router = APIRouter(prefix="/api/v1/risks", tags=["Risk analytics"])


@router.get("/heat-map")
async def risk_heat_map(
    score_type: str = Query("residual"),
    category: str | None = Query(None),
    status: str | None = Query(None, description="Comma-separated statuses"),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    statuses = [st.strip() for st in status.split(",") if st.strip()] if status else None
    return envelope(await heat_map(s, user.org_id, score_type, category, statuses))


@router.get("/gaps")
async def risk_gaps(
    gap_type: str = Query("all"),
    min_severity: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(require_roles(*roles.RISK_GAP_VIEW)),
    s: AsyncSession = Depends(get_session),
):
    summary = await gap_summary(s, user.org_id)
    gaps, total = await find_gaps(s, user.org_id, gap_type, min_severity, page.offset, page.per_page)
    return envelope(
        {"summary": summary, "gaps": gaps},
        total_gaps=total, page=page.page, per_page=page.per_page,
    )


@router.get("/stats")
async def risk_statistics(
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    return envelope(await risk_stats(s, user.org_id))
