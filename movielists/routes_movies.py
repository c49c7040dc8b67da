import uuid
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import tmdb
from .database import get_db
from .models import Movie

router = APIRouter(prefix="/api/movies", tags=["movies"])

MOVIE_METADATA_FIELDS = (
    "title",
    "original_title",
    "overview",
    "poster_path",
    "backdrop_path",
    "release_date",
    "vote_average",
    "genre_ids",
    "extra",
)


def serialize_movie(movie: Movie) -> dict:
    return {
        "id": str(movie.id),
        "tmdb_id": int(movie.tmdb_id),
        "title": movie.title,
        "original_title": movie.original_title,
        "overview": movie.overview,
        "poster_path": movie.poster_path,
        "backdrop_path": movie.backdrop_path,
        "release_date": movie.release_date,
        "vote_average": movie.vote_average,
        "genre_ids": list(movie.genre_ids) if movie.genre_ids is not None else None,
        "extra": movie.extra,
    }


async def ensure_movie(db: AsyncSession, tmdb_id: int, **metadata) -> uuid.UUID:
    """Upsert the catalog snapshot for ``tmdb_id`` and return the internal movie id.

    Every reference refreshes the stored copy: all metadata fields are
    overwritten, and fields missing from ``metadata`` are cleared.
    """
    unknown = set(metadata) - set(MOVIE_METADATA_FIELDS)
    if unknown:
        raise TypeError(f"Unknown movie fields: {', '.join(sorted(unknown))}")
    values = {field: metadata.get(field) for field in MOVIE_METADATA_FIELDS}
    now = datetime.now(timezone.utc)

    movie = (
        await db.execute(select(Movie).where(Movie.tmdb_id == tmdb_id))
    ).scalar_one_or_none()
    if movie is not None:
        for field, value in values.items():
            setattr(movie, field, value)
        movie.updated_at = now
        await db.flush()
        return movie.id

    movie = Movie(tmdb_id=tmdb_id, created_at=now, updated_at=now, **values)
    db.add(movie)
    await db.flush()
    return movie.id


@router.get("/search")
async def search(q: str = Query(..., min_length=1), page: int = Query(1, ge=1, le=500)):
    return await tmdb.search_movie(q, page=page)


@router.get("/popular")
async def popular(page: int = Query(1, ge=1, le=500)):
    return await tmdb.get_popular(page=page)


@router.get("/{movie_id}")
async def get_movie(movie_id: UUID, db: AsyncSession = Depends(get_db)):
    movie = await db.get(Movie, movie_id)
    if movie is None:
        return None
    return serialize_movie(movie)
