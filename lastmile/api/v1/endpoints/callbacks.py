from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.api.v1.deps import get_callback_http, get_test_callback_http
from lastmile.core.db import get_db
from lastmile.models.callback import CallbackAttempt, CallbackDelivery
from lastmile.models.enums import CallbackStatus
from lastmile.schemas.callback import CallbackAttemptOut, CallbackOut, CallbackSendResult, CallbackTestRequest
from lastmile.services.callback_http import CallbackHttpClient, HttpResult
from lastmile.services.callbacks import requeue_callback, send_callback_now, send_test_callback
from lastmile.services.internal_admin import require_internal_admin

router = APIRouter(prefix="/admin", dependencies=[Depends(require_internal_admin)])


def _send_result(result: HttpResult, *, ok_message: str) -> CallbackSendResult:
    if result.ok:
        message = ok_message
    elif result.status_code is not None:
        message = f"Callback failed with status {result.status_code}"
    else:
        message = result.error_message or "Callback failed"
    return CallbackSendResult(success=result.ok, status_code=result.status_code, message=message, response=result.detail)


@router.get("/callbacks", response_model=list[CallbackOut])
async def list_callbacks(
    tenant_id: str | None = Query(default=None),
    status: CallbackStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[CallbackOut]:
    stmt = select(CallbackDelivery)
    if tenant_id:
        stmt = stmt.where(CallbackDelivery.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(CallbackDelivery.status == status.value)
    stmt = stmt.order_by(CallbackDelivery.created_at.desc()).limit(limit)

    rows = (await db.execute(stmt)).scalars().all()
    return [CallbackOut.model_validate(r) for r in rows]


@router.get("/callbacks/{callback_id}/attempts", response_model=list[CallbackAttemptOut])
async def list_attempts(callback_id: str, db: AsyncSession = Depends(get_db)) -> list[CallbackAttemptOut]:
    cb = (await db.execute(select(CallbackDelivery).where(CallbackDelivery.id == callback_id))).scalar_one_or_none()
    if not cb:
        raise HTTPException(status_code=404, detail="Callback not found")

    rows = (await db.execute(
        select(CallbackAttempt)
        .where(CallbackAttempt.callback_id == callback_id)
        .order_by(CallbackAttempt.attempt_number.asc())
    )).scalars().all()
    return [CallbackAttemptOut.model_validate(a) for a in rows]


@router.post("/callbacks/{callback_id}/requeue", response_model=CallbackOut)
async def requeue(callback_id: str, db: AsyncSession = Depends(get_db)) -> CallbackOut:
    cb = await requeue_callback(db, callback_id)
    await db.commit()
    return CallbackOut.model_validate(cb)


@router.post("/destinations/{destination_id}/callback", response_model=CallbackSendResult)
async def send_now(
    destination_id: str,
    http: CallbackHttpClient = Depends(get_callback_http),
    db: AsyncSession = Depends(get_db),
) -> CallbackSendResult:
    result = await send_callback_now(db, destination_id, http=http)
    return _send_result(result, ok_message="Callback sent successfully")


@router.post("/callbacks/test", response_model=CallbackSendResult)
async def test_callback(
    payload: CallbackTestRequest,
    http: CallbackHttpClient = Depends(get_test_callback_http),
) -> CallbackSendResult:
    result = await send_test_callback(payload.url, payload.api_key, http=http)
    return _send_result(result, ok_message="Test callback sent successfully")
