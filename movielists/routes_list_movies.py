import logging
import uuid
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .access import ANY_ROLE, EDIT_ROLES, require_role, resolve_role
from .auth import get_current_user, get_optional_user
from .database import get_db
from .models import ListMovie, Movie, User
from .routes_movies import ensure_movie, serialize_movie

logger = logging.getLogger(__name__)

router = APIRouter(tags=["list-movies"])

ADD_DENIED = "You don't have permission to add movies to this list"
REMOVE_DENIED = "You don't have permission to remove movies from this list"


def _serialize_list_movie(item: ListMovie, movie: Movie | None) -> dict:
    return {
        "id": str(item.id),
        "list_id": str(item.list_id),
        "movie_id": str(item.movie_id),
        "note": item.note,
        "watched": bool(item.watched),
        "added_by": str(item.added_by),
        "added_at": item.added_at.isoformat() if item.added_at else None,
        "movie": serialize_movie(movie) if movie else None,
    }


async def _get_list_movie_or_404(db: AsyncSession, list_movie_id: UUID) -> ListMovie:
    item = await db.get(ListMovie, list_movie_id)
    if item is None:
        raise HTTPException(status_code=404, detail="List movie not found")
    return item


async def add_movie_to_list(
    db: AsyncSession,
    list_id: uuid.UUID,
    movie_id: uuid.UUID,
    user_id: uuid.UUID,
    note: str | None = None,
) -> tuple[ListMovie, bool]:
    """Attach a stored movie to a list; returns (row, created). Duplicates are a silent no-op."""
    await require_role(db, list_id, user_id, EDIT_ROLES, ADD_DENIED)

    existing = (
        await db.execute(
            select(ListMovie).where(
                ListMovie.list_id == list_id,
                ListMovie.movie_id == movie_id,
            )
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing, False

    item = ListMovie(
        list_id=list_id,
        movie_id=movie_id,
        note=note,
        watched=False,
        added_by=user_id,
        added_at=datetime.now(timezone.utc),
    )
    db.add(item)
    await db.flush()
    return item, True


class AddToListRequest(BaseModel):
    tmdb_id: int = Field(ge=1)
    title: str = Field(min_length=1, max_length=500)
    original_title: str | None = Field(default=None, max_length=500)
    overview: str | None = None
    poster_path: str | None = Field(default=None, max_length=500)
    backdrop_path: str | None = Field(default=None, max_length=500)
    release_date: str | None = Field(default=None, max_length=40)
    vote_average: float | None = None
    genre_ids: list[int] | None = None
    extra: dict | None = None
    note: str | None = Field(default=None, max_length=2000)


class UpdateNoteRequest(BaseModel):
    note: str = Field(max_length=2000)


@router.get("/api/lists/{list_id}/movies")
async def get_list_movies(
    list_id: UUID,
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    if user is None:
        return []
    if await resolve_role(db, list_id, user.id) is None:
        return []
    rows = (
        await db.execute(
            select(ListMovie, Movie)
            .outerjoin(Movie, Movie.id == ListMovie.movie_id)
            .where(ListMovie.list_id == list_id)
            .order_by(ListMovie.added_at.desc())
        )
    ).all()
    return [_serialize_list_movie(item, movie) for item, movie in rows]


@router.post("/api/lists/{list_id}/movies")
async def add_to_list(
    list_id: UUID,
    body: AddToListRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    # rollback() expires the user row; keep the id.
    user_id = user.id
    # Check before the upsert so a rejected caller leaves the catalog untouched.
    await require_role(db, list_id, user_id, EDIT_ROLES, ADD_DENIED)

    metadata = body.model_dump(exclude={"tmdb_id", "note"})
    for attempt in range(2):
        try:
            movie_id = await ensure_movie(db, body.tmdb_id, **metadata)
            item, created = await add_movie_to_list(db, list_id, movie_id, user_id, body.note)
            item_id = str(item.id)
            await db.commit()
            break
        except IntegrityError:
            # A concurrent add committed the movie or the list entry first.
            # The retry finds those rows and takes the update / no-op path.
            await db.rollback()
            if attempt:
                logger.warning("Add to list kept conflicting (list_id=%s, tmdb_id=%s)", list_id, body.tmdb_id)
                raise HTTPException(status_code=409, detail="Movie was modified concurrently, please try again")
    return {
        "ok": True,
        "list_movie_id": item_id,
        "movie_id": str(movie_id),
        "already_exists": not created,
    }


@router.post("/api/list-movies/{list_movie_id}/toggle-watched")
async def toggle_watched(
    list_movie_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await _get_list_movie_or_404(db, list_movie_id)
    # Any role may toggle, viewers included.
    await require_role(db, item.list_id, user.id, ANY_ROLE)
    item.watched = not item.watched
    await db.commit()
    return {"ok": True, "watched": bool(item.watched)}


@router.put("/api/list-movies/{list_movie_id}/note")
async def update_note(
    list_movie_id: UUID,
    body: UpdateNoteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await _get_list_movie_or_404(db, list_movie_id)
    await require_role(db, item.list_id, user.id, ANY_ROLE)
    item.note = body.note
    await db.commit()
    return {"ok": True, "note": item.note}


@router.delete("/api/list-movies/{list_movie_id}")
async def remove_from_list(
    list_movie_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await _get_list_movie_or_404(db, list_movie_id)
    await require_role(db, item.list_id, user.id, EDIT_ROLES, REMOVE_DENIED)
    await db.delete(item)
    await db.commit()
    return {"ok": True, "removed": True}
