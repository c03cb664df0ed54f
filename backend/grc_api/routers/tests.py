"""
Continuous-monitoring test definitions — /api/v1/tests

Lifecycle:  draft → active ⇄ paused → deprecated (terminal)

Activation schedules the first run one minute out; pausing or deprecating
clears ``next_run_at``. DELETE is a soft delete to ``deprecated``.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api import roles
from grc_api.database import get_session
from grc_api.deps import CurrentUser, get_current_user, get_owned, require_roles
from grc_api.errors import validation_error
from grc_api.middleware.audit import audit_log, diff_changes
from grc_api.models.base import utcnow
from grc_api.models.control import Control
from grc_api.models.test import TEST_SEVERITIES, TEST_STATUSES, TEST_TYPES, Test
from grc_api.pagination import Page, order_by, paginate, resolve_order, resolve_sort
from grc_api.responses import envelope, listing
from grc_api.schemas.common import StatusChange, iso
from grc_api.schemas.test import ControlBrief, TestCreate, TestDetailOut, TestOut, TestUpdate
from grc_api.services.execution import FIRST_RUN_DELAY, is_valid_cron
from grc_api.services.lifecycle import TEST_TRANSITIONS, ensure_transition
from grc_api.services.refs import user_ref
from grc_api.validation import check_choice, check_max_length

router = APIRouter(prefix="/api/v1/tests", tags=["Tests"])

IDENTIFIER_MAX = 50
TITLE_MAX = 500
MAX_TAGS = 20
INTERVAL_RANGE = (1, 10080)
TIMEOUT_RANGE = (1, 3600)
RETRY_COUNT_RANGE = (0, 5)
RETRY_DELAY_RANGE = (1, 3600)

TEST_SORTS = {
    "identifier": Test.identifier,
    "title": Test.title,
    "test_type": Test.test_type,
    "severity": Test.severity,
    "status": Test.status,
    "last_run_at": Test.last_run_at,
    "created_at": Test.created_at,
}


def _in_range(label: str, value: int | None, bounds: tuple[int, int]) -> None:
    low, high = bounds
    if value is not None and not low <= value <= high:
        raise validation_error(f"{label} must be between {low} and {high}")


def _check_schedule(cron: str | None, interval: int | None) -> None:
    if cron is not None and interval is not None:
        raise validation_error("schedule_cron and schedule_interval_min are mutually exclusive")
    if cron is not None and not is_valid_cron(cron):
        raise validation_error("Invalid schedule_cron")
    _in_range("schedule_interval_min", interval, INTERVAL_RANGE)


def _check_execution(data: dict) -> None:
    _in_range("timeout_seconds", data.get("timeout_seconds"), TIMEOUT_RANGE)
    _in_range("retry_count", data.get("retry_count"), RETRY_COUNT_RANGE)
    _in_range("retry_delay_seconds", data.get("retry_delay_seconds"), RETRY_DELAY_RANGE)
    if data.get("tags") is not None and len(data["tags"]) > MAX_TAGS:
        raise validation_error(f"Maximum {MAX_TAGS} tags allowed")


def _test_fields(test: Test, control: Control | None) -> dict:
    return dict(
        id=test.id,
        identifier=test.identifier,
        title=test.title,
        description=test.description,
        test_type=test.test_type,
        severity=test.severity,
        status=test.status,
        control=ControlBrief(
            id=control.id, identifier=control.identifier, title=control.title,
            category=control.category, status=control.status,
        ) if control else None,
        schedule_cron=test.schedule_cron,
        schedule_interval_min=test.schedule_interval_min,
        next_run_at=test.next_run_at,
        last_run_at=test.last_run_at,
        tags=test.tags or [],
        created_at=test.created_at,
        updated_at=test.updated_at,
    )


async def _test_detail(s: AsyncSession, test: Test) -> TestDetailOut:
    control = await s.get(Control, test.control_id)
    return TestDetailOut(
        **_test_fields(test, control),
        timeout_seconds=test.timeout_seconds,
        retry_count=test.retry_count,
        retry_delay_seconds=test.retry_delay_seconds,
        test_config=test.test_config or {},
        test_script=test.test_script,
        test_script_language=test.test_script_language,
        created_by=await user_ref(s, test.org_id, test.created_by),
    )


# ═══════════════════ LIST ═══════════════════

@router.get("")
async def list_tests(
    status: str | None = Query(None),
    test_type: str | None = Query(None),
    severity: str | None = Query(None),
    control_id: str | None = Query(None),
    tags: str | None = Query(None, description="Comma-separated; all must be present"),
    search: str | None = Query(None),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(paginate(100)),
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    q = select(Test).where(Test.org_id == user.org_id)
    if status:
        q = q.where(Test.status == status)
    if test_type:
        q = q.where(Test.test_type == test_type)
    if severity:
        q = q.where(Test.severity == severity)
    if control_id:
        q = q.where(Test.control_id == control_id)
    if tags:
        for tag in (t.strip() for t in tags.split(",")):
            if tag:
                q = q.where(cast(Test.tags, String).like(f'%"{tag}"%'))
    if search:
        pattern = f"%{search.lower()}%"
        q = q.where(or_(
            func.lower(Test.title).like(pattern),
            func.lower(func.coalesce(Test.description, "")).like(pattern),
        ))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = resolve_sort(sort, TEST_SORTS, "identifier")
    q = q.add_columns(Control).outerjoin(Control, Control.id == Test.control_id)
    q = page.apply(q.order_by(order_by(col, resolve_order(order, "asc")), Test.id))
    rows = (await s.execute(q)).all()
    return listing([TestOut(**_test_fields(t, c)) for t, c in rows], total, page.page, page.per_page)


# ═══════════════════ CRUD ═══════════════════

@router.post("", status_code=201)
async def create_test(
    body: TestCreate,
    user: CurrentUser = Depends(require_roles(*roles.TEST_CREATE)),
    s: AsyncSession = Depends(get_session),
):
    check_choice("test_type", body.test_type, TEST_TYPES)
    check_choice("severity", body.severity, TEST_SEVERITIES)
    check_max_length("Identifier", body.identifier, IDENTIFIER_MAX)
    check_max_length("Title", body.title, TITLE_MAX)
    _check_schedule(body.schedule_cron, body.schedule_interval_min)
    _check_execution(body.model_dump())

    dup = (await s.execute(
        select(Test.id).where(Test.org_id == user.org_id, Test.identifier == body.identifier)
    )).first()
    if dup:
        raise HTTPException(409, "Test identifier already exists in this organization")
    control = (await s.execute(
        select(Control).where(Control.id == body.control_id, Control.org_id == user.org_id)
    )).scalar_one_or_none()
    if control is None:
        raise HTTPException(422, "Control not found in this organization")
    if control.status != "active":
        raise HTTPException(422, "Control must be in active status")

    test = Test(
        org_id=user.org_id,
        identifier=body.identifier,
        title=body.title,
        description=body.description,
        test_type=body.test_type,
        severity=body.severity or "medium",
        status="draft",
        control_id=control.id,
        schedule_cron=body.schedule_cron,
        schedule_interval_min=body.schedule_interval_min,
        test_config=body.test_config or {},
        test_script=body.test_script,
        test_script_language=body.test_script_language,
        timeout_seconds=body.timeout_seconds if body.timeout_seconds is not None else 300,
        retry_count=body.retry_count if body.retry_count is not None else 0,
        retry_delay_seconds=body.retry_delay_seconds if body.retry_delay_seconds is not None else 60,
        tags=body.tags,
        created_by=user.user_id,
    )
    s.add(test)
    await s.flush()
    await audit_log(s, "test.created", "test", test.id, {
        "identifier": test.identifier, "test_type": test.test_type, "control_id": control.id,
    })
    await s.commit()
    await s.refresh(test)
    return envelope(await _test_detail(s, test))


@router.get("/{test_id}")
async def get_test(
    test_id: str,
    user: CurrentUser = Depends(get_current_user),
    s: AsyncSession = Depends(get_session),
):
    test = await get_owned(s, Test, test_id, user.org_id, "Test")
    return envelope(await _test_detail(s, test))


@router.put("/{test_id}")
async def update_test(
    test_id: str,
    body: TestUpdate,
    user: CurrentUser = Depends(require_roles(*roles.TEST_CREATE)),
    s: AsyncSession = Depends(get_session),
):
    test = await get_owned(s, Test, test_id, user.org_id, "Test")
    data = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None or k == "description"}
    if not data:
        raise validation_error("No fields to update")

    check_max_length("Title", data.get("title"), TITLE_MAX)
    check_choice("severity", data.get("severity"), TEST_SEVERITIES)
    _check_execution(data)

    # setting one schedule kind clears the other unless both are sent
    cron = data.get("schedule_cron", test.schedule_cron)
    interval = data.get("schedule_interval_min", test.schedule_interval_min)
    if "schedule_cron" in data and "schedule_interval_min" not in data:
        interval = None
    elif "schedule_interval_min" in data and "schedule_cron" not in data:
        cron = None
    _check_schedule(cron, interval)
    data["schedule_cron"], data["schedule_interval_min"] = cron, interval

    old = {k: getattr(test, k) for k in data}
    for k, v in data.items():
        setattr(test, k, v)
    changes = diff_changes(old, data)
    if changes:
        await audit_log(s, "test.updated", "test", test.id, {"identifier": test.identifier, "changes": changes})
    await s.commit()
    await s.refresh(test)
    return envelope(await _test_detail(s, test))


@router.put("/{test_id}/status")
async def change_test_status(
    test_id: str,
    body: StatusChange,
    user: CurrentUser = Depends(require_roles(*roles.TEST_STATUS)),
    s: AsyncSession = Depends(get_session),
):
    check_choice("status", body.status, TEST_STATUSES)
    test = await get_owned(s, Test, test_id, user.org_id, "Test")
    ensure_transition(TEST_TRANSITIONS, test.status, body.status)

    old_status = test.status
    test.status = body.status
    if body.status == "active":
        test.next_run_at = utcnow() + FIRST_RUN_DELAY
        message = "Test activated. First run scheduled."
    else:
        test.next_run_at = None
        message = f"Test status changed to {body.status}."
    await audit_log(s, "test.status_changed", "test", test.id,
                    {"old_status": old_status, "new_status": body.status})
    await s.commit()
    return envelope({
        "id": test.id,
        "status": test.status,
        "previous_status": old_status,
        "next_run_at": iso(test.next_run_at),
        "message": message,
    })


@router.delete("/{test_id}")
async def delete_test(
    test_id: str,
    user: CurrentUser = Depends(require_roles(*roles.TEST_DELETE)),
    s: AsyncSession = Depends(get_session),
):
    test = await get_owned(s, Test, test_id, user.org_id, "Test")
    ensure_transition(TEST_TRANSITIONS, test.status, "deprecated")

    old_status = test.status
    test.status = "deprecated"
    test.next_run_at = None
    await audit_log(s, "test.deleted", "test", test.id, {"identifier": test.identifier, "old_status": old_status})
    await s.commit()
    return envelope({
        "id": test.id,
        "status": "deprecated",
        "message": "Test deprecated. Historical results preserved.",
    })
