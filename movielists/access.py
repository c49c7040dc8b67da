import uuid
from typing import Literal

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ListMember, MovieList

ListRole = Literal["owner", "editor", "viewer"]
MemberRole = Literal["editor", "viewer"]

ANY_ROLE: frozenset[str] = frozenset({"owner", "editor", "viewer"})
EDIT_ROLES: frozenset[str] = frozenset({"owner", "editor"})


async def get_membership(db: AsyncSession, list_id: uuid.UUID, user_id: uuid.UUID) -> ListMember | None:
    return (
        await db.execute(
            select(ListMember).where(
                ListMember.list_id == list_id,
                ListMember.user_id == user_id,
            )
        )
    ).scalar_one_or_none()


async def resolve_role(db: AsyncSession, list_id: uuid.UUID, user_id: uuid.UUID) -> ListRole | None:
    """Return the caller's effective role on a list, or None when they have no access.

    Ownership wins over membership; a missing list resolves to None.
    """
    list_row = await db.get(MovieList, list_id)
    if list_row is None:
        return None
    if list_row.owner_id == user_id:
        return "owner"
    membership = await get_membership(db, list_id, user_id)
    if membership is None:
        return None
    return membership.role


async def get_list_or_404(db: AsyncSession, list_id: uuid.UUID) -> MovieList:
    list_row = await db.get(MovieList, list_id)
    if list_row is None:
        raise HTTPException(status_code=404, detail="List not found")
    return list_row


async def require_role(
    db: AsyncSession,
    list_id: uuid.UUID,
    user_id: uuid.UUID,
    allowed: frozenset[str],
    detail: str = "Not authorized",
) -> ListRole:
    await get_list_or_404(db, list_id)
    role = await resolve_role(db, list_id, user_id)
    if role not in allowed:
        raise HTTPException(status_code=403, detail=detail)
    return role
