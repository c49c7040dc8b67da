import logging
import os
import httpx

from .config import TMDB_LANGUAGE

logger = logging.getLogger(__name__)

BASE_URL = "https://api.themoviedb.org/3"
_client: httpx.AsyncClient | None = None

# Upstream key -> internal key for catalog results.
_RESULT_FIELDS = {
    "id": "tmdb_id",
    "title": "title",
    "original_title": "original_title",
    "overview": "overview",
    "poster_path": "poster_path",
    "backdrop_path": "backdrop_path",
    "release_date": "release_date",
    "vote_average": "vote_average",
    "genre_ids": "genre_ids",
}


class TMDBNotConfiguredError(RuntimeError):
    pass


class TMDBUpstreamError(RuntimeError):
    def __init__(self, status_code: int):
        super().__init__(f"TMDb API error: {status_code}")
        self.status_code = status_code


def _get_api_key() -> str:
    key = os.environ.get("TMDB_API_KEY", "").strip()
    if not key:
        raise TMDBNotConfiguredError("TMDB_API_KEY environment variable is not set")
    return key


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=10)
    return _client


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


async def _get(path: str, params: dict | None = None) -> dict:
    params = dict(params or {})
    params["api_key"] = _get_api_key()
    params["language"] = TMDB_LANGUAGE
    client = await _get_client()
    resp = await client.get(f"{BASE_URL}{path}", params=params)
    if resp.is_error:
        logger.warning("TMDb request failed (path=%s, status=%s)", path, resp.status_code)
        raise TMDBUpstreamError(resp.status_code)
    return resp.json()


def normalize_movie(raw: dict) -> dict:
    # title is always present, even when null; other null fields are dropped.
    movie = {"title": raw.get("title")}
    for source, target in _RESULT_FIELDS.items():
        value = raw.get(source)
        if value is None:
            continue
        movie[target] = value
    return movie


def _normalize_page(data: dict) -> dict:
    return {
        "results": [normalize_movie(row) for row in data.get("results") or []],
        "total_pages": int(data.get("total_pages") or 0),
        "total_results": int(data.get("total_results") or 0),
    }


async def search_movie(query: str, page: int = 1) -> dict:
    data = await _get("/search/movie", {"query": query, "page": page})
    return _normalize_page(data)


async def get_popular(page: int = 1) -> dict:
    data = await _get("/movie/popular", {"page": page})
    return _normalize_page(data)
