import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .access import ListRole, get_list_or_404, resolve_role
from .auth import get_current_user, get_optional_user
from .database import get_db
from .models import Invite, ListMember, ListMovie, MovieList, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lists", tags=["lists"])


def _normalize_list_name(name: str) -> str:
    return " ".join(name.strip().split())


def _normalize_description(description: str | None) -> str | None:
    if description is None:
        return None
    return description.strip() or None


def serialize_list(list_row: MovieList, role: ListRole) -> dict:
    return {
        "id": str(list_row.id),
        "name": list_row.name,
        "description": list_row.description,
        "owner_id": str(list_row.owner_id),
        "created_at": list_row.created_at.isoformat() if list_row.created_at else None,
        "role": role,
    }


def _serialize_member(member: ListMember, user: User | None) -> dict:
    return {
        "id": str(member.id),
        "user_id": str(member.user_id),
        "email": user.email if user else None,
        "name": user.name if user else None,
        "role": member.role,
        "joined_at": member.joined_at.isoformat() if member.joined_at else None,
    }


async def _get_members_count(db: AsyncSession, list_id: UUID) -> int:
    value = await db.scalar(select(func.count(ListMember.id)).where(ListMember.list_id == list_id))
    return int(value or 0)


async def _get_movies_count(db: AsyncSession, list_id: UUID) -> int:
    value = await db.scalar(select(func.count(ListMovie.id)).where(ListMovie.list_id == list_id))
    return int(value or 0)


class CreateListRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=2000)


class UpdateListRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=2000)


@router.get("")
async def get_my_lists(
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    if user is None:
        return []

    owned = (
        await db.execute(select(MovieList).where(MovieList.owner_id == user.id))
    ).scalars().all()
    memberships = (
        await db.execute(
            select(ListMember, MovieList)
            .join(MovieList, MovieList.id == ListMember.list_id)
            .where(ListMember.user_id == user.id)
        )
    ).all()

    entries = [(row.created_at, serialize_list(row, "owner")) for row in owned]
    entries += [(list_row.created_at, serialize_list(list_row, member.role)) for member, list_row in memberships]
    # Stable: equal timestamps keep storage order.
    entries.sort(key=lambda entry: entry[0], reverse=True)
    return [payload for _, payload in entries]


@router.post("")
async def create_list(
    body: CreateListRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    name = _normalize_list_name(body.name)
    if not name:
        raise HTTPException(status_code=400, detail="List name is required")

    list_row = MovieList(
        name=name,
        description=_normalize_description(body.description),
        owner_id=user.id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(list_row)
    await db.commit()
    logger.info("List created (list_id=%s, owner_id=%s)", list_row.id, user.id)
    return {"ok": True, "id": str(list_row.id), "list": serialize_list(list_row, "owner")}


@router.get("/{list_id}")
async def get_list(
    list_id: UUID,
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    if user is None:
        return None
    role = await resolve_role(db, list_id, user.id)
    if role is None:
        # Same answer for "missing" and "not yours".
        return None
    list_row = await db.get(MovieList, list_id)
    return {
        **serialize_list(list_row, role),
        # +1 for the owner, who has no membership row.
        "members_count": await _get_members_count(db, list_id) + 1,
        "movies_count": await _get_movies_count(db, list_id),
    }


@router.patch("/{list_id}")
async def update_list(
    list_id: UUID,
    body: UpdateListRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    list_row = await get_list_or_404(db, list_id)
    if list_row.owner_id != user.id:
        raise HTTPException(status_code=403, detail="Only the owner can edit the list")

    if "name" in body.model_fields_set and body.name is not None:
        name = _normalize_list_name(body.name)
        if not name:
            raise HTTPException(status_code=400, detail="List name is required")
        list_row.name = name
    if "description" in body.model_fields_set:
        list_row.description = _normalize_description(body.description)

    await db.commit()
    return {"ok": True, "list": serialize_list(list_row, "owner")}


@router.delete("/{list_id}")
async def delete_list(
    list_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    list_row = await get_list_or_404(db, list_id)
    if list_row.owner_id != user.id:
        raise HTTPException(status_code=403, detail="Only the owner can delete the list")

    await db.execute(delete(ListMovie).where(ListMovie.list_id == list_id))
    await db.execute(delete(ListMember).where(ListMember.list_id == list_id))
    await db.execute(delete(Invite).where(Invite.list_id == list_id))
    await db.delete(list_row)
    await db.commit()
    logger.info("List deleted (list_id=%s, owner_id=%s)", list_id, user.id)
    return {"ok": True, "removed": True}


@router.get("/{list_id}/members")
async def get_members(
    list_id: UUID,
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    if user is None:
        return None
    role = await resolve_role(db, list_id, user.id)
    if role is None:
        return None
    list_row = await db.get(MovieList, list_id)
    owner = await db.get(User, list_row.owner_id)
    rows = (
        await db.execute(
            select(ListMember, User)
            .outerjoin(User, User.id == ListMember.user_id)
            .where(ListMember.list_id == list_id)
            .order_by(ListMember.joined_at.asc())
        )
    ).all()
    return {
        "owner": {
            "user_id": str(list_row.owner_id),
            "email": owner.email if owner else None,
            "name": owner.name if owner else None,
            "role": "owner",
        },
        "members": [_serialize_member(member, member_user) for member, member_user in rows],
    }


@router.delete("/{list_id}/members/{member_id}")
async def remove_member(
    list_id: UUID,
    member_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    list_row = await get_list_or_404(db, list_id)
    member = await db.get(ListMember, member_id)
    if member is None or member.list_id != list_row.id:
        raise HTTPException(status_code=404, detail="Member not found")

    # Owner removes anyone; members may only remove themselves.
    if list_row.owner_id != user.id and member.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not authorized")

    await db.delete(member)
    await db.commit()
    return {"ok": True, "removed": True}
