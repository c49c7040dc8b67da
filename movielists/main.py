import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from . import tmdb
from .auth import verify_csrf
from .config import CORS_ORIGINS, LOG_LEVEL, SERVER_HOST, SERVER_PORT
from .database import init_db, close_db
from .ratelimit import limiter
from .routes_auth import router as auth_router
from .routes_invites import router as invites_router
from .routes_list_movies import router as list_movies_router
from .routes_lists import router as lists_router
from .routes_movies import router as movies_router

logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logging.getLogger("movielists").setLevel(LOG_LEVEL)
logger = logging.getLogger(__name__)

CSRF_EXEMPT_PATHS = ("/api/auth/login", "/api/auth/signup", "/api/auth/logout")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await tmdb.close_client()
    await close_db()


app = FastAPI(title="Movie Lists", lifespan=lifespan)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"detail": "Too many requests. Please try again later."})


@app.exception_handler(tmdb.TMDBNotConfiguredError)
async def tmdb_not_configured_handler(request: Request, exc: tmdb.TMDBNotConfiguredError):
    logger.error("Movie catalog is not configured: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Movie catalog is not configured"})


@app.exception_handler(tmdb.TMDBUpstreamError)
async def tmdb_upstream_handler(request: Request, exc: tmdb.TMDBUpstreamError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# Security headers middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# CSRF middleware for cookie-authenticated state-changing requests
@app.middleware("http")
async def csrf_middleware(request: Request, call_next):
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        if request.url.path not in CSRF_EXEMPT_PATHS and request.cookies.get("access_token"):
            try:
                verify_csrf(request)
            except HTTPException as exc:
                # Middleware runs outside the exception handlers.
                return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    return await call_next(request)


if CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "X-CSRF-Token"],
    )


app.include_router(auth_router)
app.include_router(lists_router)
app.include_router(invites_router)
app.include_router(list_movies_router)
app.include_router(movies_router)


@app.get("/api/health")
async def health():
    return {"ok": True}


def run():
    uvicorn.run("movielists.main:app", host=SERVER_HOST, port=SERVER_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
