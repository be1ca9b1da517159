"""
NDR command routes.

State-machine violations come back as 409.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.database import get_db
from syncengine.dependencies.auth import TokenPayload, get_current_user
from syncengine.dependencies.services import get_ndr_service
from syncengine.models.ndr import NdrAction, NdrActionOutcome, NdrActionType, NdrRecord, NdrStatus
from syncengine.routes.errors import raise_for_result
from syncengine.services.ndr_service import NdrService
from syncengine.timeutils import to_naive_utc


router = APIRouter(prefix="/api/ndr", tags=["ndr"])


class AssignRequest(BaseModel):
    user_id: str


class ActionRequest(BaseModel):
    action_type: NdrActionType
    outcome: Optional[NdrActionOutcome] = None
    notes: Optional[str] = None
    reattempt_at: Optional[datetime] = None


class ReattemptRequest(BaseModel):
    reattempt_at: datetime
    notes: Optional[str] = None


class ResolveRequest(BaseModel):
    resolution: str


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def ndr_to_dict(record: NdrRecord) -> dict:
    return {
        "id": record.id,
        "awb": record.awb,
        "order_ref": record.order_ref,
        "status": record.status.value,
        "priority": record.priority.value,
        "reason": record.reason.value,
        "attempt_count": record.attempt_count,
        "due_at": _iso(record.due_at),
        "opened_at": _iso(record.opened_at),
        "assigned_user_id": record.assigned_user_id,
        "reattempt_at": _iso(record.reattempt_at),
        "resolution": record.resolution,
        "resolved_at": _iso(record.resolved_at),
    }


def action_to_dict(action: NdrAction) -> dict:
    return {
        "id": action.id,
        "sequence": action.sequence,
        "action_type": action.action_type.value,
        "outcome": action.outcome.value if action.outcome else None,
        "notes": action.notes,
        "reattempt_at": _iso(action.reattempt_at),
        "performed_by": action.performed_by,
        "performed_at": _iso(action.performed_at),
    }


@router.get("/")
async def list_ndrs(
    status_filter: Optional[NdrStatus] = Query(None, alias="status"),
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the tenant's NDR cases, most urgent first."""
    stmt = select(NdrRecord).where(NdrRecord.tenant_id == token.tenant_id)
    if status_filter is not None:
        stmt = stmt.where(NdrRecord.status == status_filter)
    result = await db.execute(stmt.order_by(NdrRecord.due_at).limit(200))
    records = sorted(result.scalars().all(), key=lambda r: (-r.priority.rank, r.due_at))
    return {"ndrs": [ndr_to_dict(r) for r in records]}


@router.get("/{ndr_id}")
async def get_ndr(
    ndr_id: str,
    service: NdrService = Depends(get_ndr_service),
):
    record = await service.get(ndr_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="NDR not found"
        )
    actions = await service.list_actions(ndr_id)
    return {**ndr_to_dict(record), "actions": [action_to_dict(a) for a in actions]}


@router.post("/{ndr_id}/assign")
async def assign_ndr(
    ndr_id: str,
    body: AssignRequest,
    service: NdrService = Depends(get_ndr_service),
):
    result = await service.assign(ndr_id, body.user_id)
    raise_for_result(result)
    return ndr_to_dict(result.value)


@router.post("/{ndr_id}/actions", status_code=status.HTTP_201_CREATED)
async def add_action(
    ndr_id: str,
    body: ActionRequest,
    token: TokenPayload = Depends(get_current_user),
    service: NdrService = Depends(get_ndr_service),
):
    result = await service.record_action(
        ndr_id,
        body.action_type,
        outcome=body.outcome,
        notes=body.notes,
        reattempt_at=to_naive_utc(body.reattempt_at) if body.reattempt_at else None,
        performed_by=token.sub,
    )
    raise_for_result(result)
    return action_to_dict(result.value)


@router.post("/{ndr_id}/reattempt")
async def schedule_reattempt(
    ndr_id: str,
    body: ReattemptRequest,
    token: TokenPayload = Depends(get_current_user),
    service: NdrService = Depends(get_ndr_service),
):
    result = await service.schedule_reattempt(
        ndr_id, to_naive_utc(body.reattempt_at), performed_by=token.sub, notes=body.notes
    )
    raise_for_result(result)
    return ndr_to_dict(await service.get(ndr_id))


@router.post("/{ndr_id}/rto")
async def initiate_rto(
    ndr_id: str,
    token: TokenPayload = Depends(get_current_user),
    service: NdrService = Depends(get_ndr_service),
):
    result = await service.initiate_rto(ndr_id, performed_by=token.sub)
    raise_for_result(result)
    return ndr_to_dict(result.value)


@router.post("/{ndr_id}/resolve")
async def resolve_ndr(
    ndr_id: str,
    body: ResolveRequest,
    token: TokenPayload = Depends(get_current_user),
    service: NdrService = Depends(get_ndr_service),
):
    result = await service.resolve(ndr_id, body.resolution, performed_by=token.sub)
    raise_for_result(result)
    return ndr_to_dict(result.value)
