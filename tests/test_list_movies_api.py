import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select

from movielists import routes_list_movies
from movielists.models import Movie
from movielists.routes_movies import ensure_movie

from conftest import add_movie, create_list, invite_and_join


def _movie_count(run_db):
    async def _count(session):
        return await session.scalar(select(func.count(Movie.id)))

    return run_db(_count)


def test_add_movie_and_read_back(owner):
    list_id = create_list(owner)
    r = add_movie(
        owner,
        list_id,
        tmdb_id=603,
        title="The Matrix",
        poster_path="/matrix.jpg",
        vote_average=8.2,
        genre_ids=[28, 878],
        extra={"runtime": 136},
        note="rewatch",
    )
    assert r.status_code == 200
    assert r.json()["already_exists"] is False

    rows = owner.get(f"/api/lists/{list_id}/movies").json()
    assert len(rows) == 1
    row = rows[0]
    assert row["watched"] is False
    assert row["note"] == "rewatch"
    assert row["added_by"] == owner.user_id
    assert row["movie"]["tmdb_id"] == 603
    assert row["movie"]["genre_ids"] == [28, 878]

    movie = owner.get(f"/api/movies/{row['movie_id']}").json()
    assert movie["title"] == "The Matrix"
    assert movie["extra"] == {"runtime": 136}
    assert owner.get(f"/api/movies/{uuid.uuid4()}").json() is None


def test_duplicate_add_is_noop(owner, run_db):
    list_id = create_list(owner)
    first = add_movie(owner, list_id).json()
    second = add_movie(owner, list_id).json()

    assert second["already_exists"] is True
    assert second["list_movie_id"] == first["list_movie_id"]
    assert owner.get(f"/api/lists/{list_id}").json()["movies_count"] == 1
    assert _movie_count(run_db) == 1


def test_same_movie_shared_across_lists(owner, run_db):
    first_id = create_list(owner, "First")
    second_id = create_list(owner, "Second")
    a = add_movie(owner, first_id, title="Old title").json()
    b = add_movie(owner, second_id, title="New title").json()

    assert a["movie_id"] == b["movie_id"]
    assert _movie_count(run_db) == 1
    rows = owner.get(f"/api/lists/{first_id}/movies").json()
    assert rows[0]["movie"]["title"] == "New title"


def test_ensure_movie_overwrites_metadata(run_db):
    first = run_db(lambda s: _ensure_and_commit(s, title="Alien", overview="In space", vote_average=8.0))
    second = run_db(lambda s: _ensure_and_commit(s, title="Alien (1979)"))
    assert first == second

    async def _load(session):
        rows = (await session.execute(select(Movie).where(Movie.tmdb_id == 348))).scalars().all()
        return [(m.title, m.overview, m.vote_average) for m in rows]

    assert run_db(_load) == [("Alien (1979)", None, None)]


async def _ensure_and_commit(session, **metadata):
    movie_id = await ensure_movie(session, 348, **metadata)
    await session.commit()
    return movie_id


def test_viewer_cannot_add(owner, other, run_db):
    list_id = create_list(owner)
    invite_and_join(owner, other, list_id, role="viewer")

    r = add_movie(other, list_id)
    assert r.status_code == 403
    assert r.json()["detail"] == "You don't have permission to add movies to this list"
    assert owner.get(f"/api/lists/{list_id}").json()["movies_count"] == 0
    assert _movie_count(run_db) == 0


def test_stranger_cannot_see_or_add(owner, other):
    list_id = create_list(owner)
    add_movie(owner, list_id)
    assert other.get(f"/api/lists/{list_id}/movies").json() == []
    assert add_movie(other, list_id).status_code == 403
    assert add_movie(other, str(uuid.uuid4())).status_code == 404


def test_viewer_may_toggle_and_annotate(owner, other):
    list_id = create_list(owner)
    list_movie_id = add_movie(owner, list_id).json()["list_movie_id"]
    invite_and_join(owner, other, list_id, role="viewer")

    r = other.post(f"/api/list-movies/{list_movie_id}/toggle-watched")
    assert r.status_code == 200
    assert r.json()["watched"] is True
    r = other.post(f"/api/list-movies/{list_movie_id}/toggle-watched")
    assert r.json()["watched"] is False

    r = other.put(f"/api/list-movies/{list_movie_id}/note", json={"note": "seen it twice"})
    assert r.status_code == 200
    assert owner.get(f"/api/lists/{list_id}/movies").json()[0]["note"] == "seen it twice"


def test_stranger_cannot_toggle(owner, other):
    list_id = create_list(owner)
    list_movie_id = add_movie(owner, list_id).json()["list_movie_id"]
    r = other.post(f"/api/list-movies/{list_movie_id}/toggle-watched")
    assert r.status_code == 403
    assert other.put(f"/api/list-movies/{list_movie_id}/note", json={"note": "x"}).status_code == 403
    assert other.post(f"/api/list-movies/{uuid.uuid4()}/toggle-watched").status_code == 404


def test_remove_requires_editor(owner, other, make_user):
    editor = make_user()
    list_id = create_list(owner)
    list_movie_id = add_movie(owner, list_id).json()["list_movie_id"]
    invite_and_join(owner, other, list_id, role="viewer")
    invite_and_join(owner, editor, list_id, role="editor")

    r = other.delete(f"/api/list-movies/{list_movie_id}")
    assert r.status_code == 403
    assert r.json()["detail"] == "You don't have permission to remove movies from this list"

    assert editor.delete(f"/api/list-movies/{list_movie_id}").status_code == 200
    assert owner.get(f"/api/lists/{list_id}").json()["movies_count"] == 0
    assert editor.delete(f"/api/list-movies/{list_movie_id}").status_code == 404


def test_movies_listed_newest_first(owner):
    list_id = create_list(owner)
    add_movie(owner, list_id, tmdb_id=1, title="First")
    add_movie(owner, list_id, tmdb_id=2, title="Second")
    titles = [row["movie"]["title"] for row in owner.get(f"/api/lists/{list_id}/movies").json()]
    assert titles == ["Second", "First"]


def test_add_retries_after_concurrent_movie_insert(owner, session_factory, monkeypatch, run_db):
    list_id = create_list(owner)
    calls = []

    async def racing_ensure_movie(db, tmdb_id, **metadata):
        calls.append(tmdb_id)
        if len(calls) == 1:
            # Another request stores the same catalog entry between lookup and insert.
            async with session_factory() as concurrent:
                await ensure_movie(concurrent, tmdb_id, **metadata)
                await concurrent.commit()
            now = datetime.now(timezone.utc)
            db.add(Movie(tmdb_id=tmdb_id, title=metadata["title"], created_at=now, updated_at=now))
            await db.flush()
        return await ensure_movie(db, tmdb_id, **metadata)

    monkeypatch.setattr(routes_list_movies, "ensure_movie", racing_ensure_movie)

    r = add_movie(owner, list_id)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["already_exists"] is False
    assert body["list_movie_id"] is not None
    assert len(calls) == 2

    rows = owner.get(f"/api/lists/{list_id}/movies").json()
    assert [row["movie_id"] for row in rows] == [body["movie_id"]]
    assert _movie_count(run_db) == 1
