import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import invites
from .access import MemberRole, get_list_or_404, get_membership
from .auth import get_current_user, get_optional_user
from .config import build_invite_link
from .database import get_db
from .models import Invite, ListMember, MovieList, User
from .ratelimit import INVITE_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["invites"])


def _serialize_invite(invite: Invite) -> dict:
    return {
        "id": str(invite.id),
        "code": invite.code,
        "list_id": str(invite.list_id),
        "role": invite.role,
        "created_by": str(invite.created_by),
        "created_at": invite.created_at.isoformat() if invite.created_at else None,
        "url": build_invite_link(invite.code),
    }


async def _get_invite_by_code(db: AsyncSession, code: str) -> Invite | None:
    return (
        await db.execute(select(Invite).where(Invite.code == code))
    ).scalar_one_or_none()


class CreateInviteRequest(BaseModel):
    role: MemberRole


@router.post("/api/lists/{list_id}/invites")
async def create_invite(
    list_id: UUID,
    body: CreateInviteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    list_row = await get_list_or_404(db, list_id)
    if list_row.owner_id != user.id:
        raise HTTPException(status_code=403, detail="Only the owner can create invites")

    invite = Invite(
        code=invites.generate_invite_code(),
        list_id=list_row.id,
        role=body.role,
        created_by=user.id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(invite)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Invite code collision, please try again")

    logger.info("Invite issued (list_id=%s, role=%s)", list_row.id, invite.role)
    return {"ok": True, "code": invite.code, "invite": _serialize_invite(invite)}


@router.get("/api/lists/{list_id}/invites")
async def list_invites(
    list_id: UUID,
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    if user is None:
        return []
    list_row = await db.get(MovieList, list_id)
    if list_row is None or list_row.owner_id != user.id:
        return []
    rows = (
        await db.execute(
            select(Invite)
            .where(Invite.list_id == list_id)
            .order_by(Invite.created_at.desc())
        )
    ).scalars().all()
    return [_serialize_invite(row) for row in rows]


@router.get("/api/invites/{code}")
@limiter.limit(INVITE_LIMIT)
async def get_invite(request: Request, code: str, db: AsyncSession = Depends(get_db)):
    invite = await _get_invite_by_code(db, code)
    if invite is None:
        return None
    list_row = await db.get(MovieList, invite.list_id)
    if list_row is None:
        return None
    return {
        "id": str(invite.id),
        "list_id": str(invite.list_id),
        "list_name": list_row.name,
        "list_description": list_row.description,
        "role": invite.role,
    }


@router.post("/api/invites/{code}/accept")
@limiter.limit(INVITE_LIMIT)
async def accept_invite(
    request: Request,
    code: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    invite = await _get_invite_by_code(db, code)
    if invite is None:
        raise HTTPException(status_code=404, detail="Invalid invite code")
    list_row = await db.get(MovieList, invite.list_id)
    if list_row is None:
        raise HTTPException(status_code=404, detail="List no longer exists")

    list_id = str(list_row.id)
    if list_row.owner_id == user.id:
        return {"ok": True, "list_id": list_id, "joined": False}
    if await get_membership(db, list_row.id, user.id) is not None:
        return {"ok": True, "list_id": list_id, "joined": False}

    db.add(
        ListMember(
            list_id=list_row.id,
            user_id=user.id,
            role=invite.role,
            joined_at=datetime.now(timezone.utc),
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent accept already created the membership.
        await db.rollback()
        return {"ok": True, "list_id": list_id, "joined": False}

    logger.info("Invite redeemed (list_id=%s, user_id=%s, role=%s)", list_id, user.id, invite.role)
    return {"ok": True, "list_id": list_id, "joined": True}


@router.delete("/api/invites/{invite_id}")
async def delete_invite(
    invite_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    invite = await db.get(Invite, invite_id)
    if invite is None:
        raise HTTPException(status_code=404, detail="Invite not found")
    list_row = await db.get(MovieList, invite.list_id)
    if list_row is None or list_row.owner_id != user.id:
        raise HTTPException(status_code=403, detail="Only the owner can delete invites")

    await db.delete(invite)
    await db.commit()
    return {"ok": True, "removed": True}
