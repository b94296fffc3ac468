"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

FastAPI service host exposing cached GitHub profile data.
"""

from __future__ import annotations

import hmac
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Literal

from pydantic import BaseModel, Field
from starlette.requests import Request

from .errors import NotFoundError, StoreUnavailableError, UpstreamUnavailableError
from .freshness import CacheResult, normalize_subject_key
from .refresh.types import RefreshStatus
from .runtime import GhPulseRuntime
from .types import RefreshPriority, RefreshType

logger = logging.getLogger("ghpulse.service")

GITHUB_LOGIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9]|-(?=[a-z0-9])){0,38}$")

FRESH_MAX_AGE_S = 3600
REVALIDATING_MAX_AGE_S = 300
QUEUE_STATUSES: tuple[RefreshStatus, ...] = ("pending", "processing", "completed", "failed")


class ServiceHostError(RuntimeError):
    """Raised for invalid service host setup."""


class RefreshDataRequest(BaseModel):
    itemId: str = Field(min_length=1)
    type: RefreshType = "profile"
    priority: RefreshPriority = "normal"


class WatchProfileRequest(BaseModel):
    userId: str = Field(min_length=1)
    username: str = Field(min_length=1)
    watching: bool = True


class RedriveRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)
    reason: str | None = None


class PurgeRequest(BaseModel):
    status: Literal["completed", "failed"] = "completed"
    olderThanS: float = Field(default=86400.0, ge=0)


def validate_login(raw: str) -> str:
    """Normalize and validate a GitHub login, raising ValueError when malformed."""
    login = normalize_subject_key(raw)
    if not GITHUB_LOGIN_RE.match(login):
        raise ValueError(f"Invalid GitHub username: {raw!r}")
    return login


def cache_control_for(result: CacheResult) -> str:
    max_age = FRESH_MAX_AGE_S if result.tier == "fresh" else REVALIDATING_MAX_AGE_S
    return f"public, max-age={max_age}"


def _store_unavailable(exc: StoreUnavailableError):
    from fastapi import HTTPException

    logger.error("Document store unavailable: %s", exc)
    return HTTPException(status_code=503, detail="Storage temporarily unavailable")


class ProfileServiceHost:
    """
    HTTP front for the freshness cache, rate limiter and refresh queue.

    Request handlers only read through the cache; background refreshes are
    left to the worker. With ``run_worker`` the worker runs inside the app's
    lifespan instead of a separate process.
    """

    def __init__(
        self,
        runtime: GhPulseRuntime,
        *,
        service_name: str = "ghpulse",
        run_worker: bool = False,
    ) -> None:
        self.runtime = runtime
        self.service_name = service_name
        self.run_worker = run_worker

    def _require_secret(self, request: Request) -> None:
        from fastapi import HTTPException

        secret = self.runtime.settings.refresh_api_secret
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if (
            not secret
            or scheme.lower() != "bearer"
            or not hmac.compare_digest(token.strip().encode(), secret.encode())
        ):
            raise HTTPException(status_code=401, detail="Unauthorized")

    async def _lookup(self, request: Request, username: str, refresh_type: RefreshType):
        from fastapi import HTTPException
        from fastapi.responses import JSONResponse

        try:
            login = validate_login(username)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        force_refresh = "nocache" in request.query_params or "no-cache" in request.headers.get(
            "cache-control", ""
        ).lower()
        try:
            result = await self.runtime.cache.get_or_refresh(
                login, refresh_type, force_refresh=force_refresh
            )
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except UpstreamUnavailableError as exc:
            if exc.reason == "rate_limited":
                raise HTTPException(status_code=429, detail=str(exc)) from exc
            logger.error("Upstream unavailable for %s %s: %s", refresh_type, login, exc)
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except StoreUnavailableError as exc:
            raise _store_unavailable(exc) from exc

        if refresh_type == "profile":
            await self.runtime.cache.record_view(login)

        body: dict[str, Any] = dict(result.data)
        body["_cache"] = result.tier
        return JSONResponse(content=body, headers={"Cache-Control": cache_control_for(result)})

    def create_app(self):
        """Create and return FastAPI app exposing profile endpoints."""
        try:
            from fastapi import FastAPI, HTTPException
        except Exception as exc:  # pragma: no cover - optional runtime path
            raise ServiceHostError("FastAPI is required to host the profile service") from exc

        runtime = self.runtime

        @asynccontextmanager
        async def lifespan(_app):
            if self.run_worker:
                await runtime.worker.start()
            try:
                yield
            finally:
                await runtime.aclose()

        app = FastAPI(title=self.service_name, lifespan=lifespan)

        @app.get("/health")
        async def health() -> dict[str, Any]:
            return {
                "status": "ok",
                "service": self.service_name,
                "store": runtime.store.backend_id,
                "worker_running": runtime.worker.is_running,
            }

        @app.get("/api/github/user/{username}")
        async def user_profile(username: str, request: Request):
            return await self._lookup(request, username, "profile")

        @app.get("/api/github/user/{username}/repos")
        async def user_repos(username: str, request: Request):
            return await self._lookup(request, username, "repos")

        @app.get("/api/github/rate-limit")
        async def rate_limit() -> dict[str, Any]:
            snapshot = await runtime.limiter.snapshot()
            return snapshot.as_dict()

        @app.post("/api/github/refresh-data")
        async def refresh_data(payload: RefreshDataRequest, request: Request) -> dict[str, Any]:
            self._require_secret(request)
            try:
                login = validate_login(payload.itemId)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            try:
                item = await runtime.queue.enqueue(
                    login,
                    payload.type,
                    payload.priority,
                    metadata={"source": "api"},
                )
            except StoreUnavailableError as exc:
                raise _store_unavailable(exc) from exc
            return {"success": True, "item": item.to_document()}

        @app.get("/api/github/refresh-queue")
        async def refresh_queue(request: Request) -> dict[str, Any]:
            self._require_secret(request)
            status = request.query_params.get("status") or None
            if status is not None and status not in QUEUE_STATUSES:
                raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
            try:
                limit = int(request.query_params.get("limit", "100"))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="limit must be an integer") from exc
            try:
                items = await runtime.queue.list_items(status=status, limit=max(1, limit))
            except StoreUnavailableError as exc:
                raise _store_unavailable(exc) from exc
            return {"count": len(items), "items": [item.to_document() for item in items]}

        @app.post("/api/github/refresh-queue/redrive")
        async def redrive_queue(payload: RedriveRequest, request: Request) -> dict[str, Any]:
            self._require_secret(request)
            try:
                moved = await runtime.queue.redrive_failed(
                    limit=payload.limit, reason=payload.reason
                )
            except StoreUnavailableError as exc:
                raise _store_unavailable(exc) from exc
            return {"success": True, "redriven": moved}

        @app.post("/api/github/refresh-queue/purge")
        async def purge_queue(payload: PurgeRequest, request: Request) -> dict[str, Any]:
            self._require_secret(request)
            try:
                removed = await runtime.queue.purge(
                    status=payload.status, older_than_s=payload.olderThanS
                )
            except StoreUnavailableError as exc:
                raise _store_unavailable(exc) from exc
            return {"success": True, "purged": removed}

        @app.post("/api/github/watch-profile")
        async def watch_profile(payload: WatchProfileRequest, request: Request) -> dict[str, Any]:
            # userId is taken from the body, so only the trusted backend holding
            # the refresh secret may change watches.
            self._require_secret(request)
            try:
                login = validate_login(payload.username)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            try:
                if payload.watching:
                    await runtime.notifier.watch(payload.userId, login)
                else:
                    await runtime.notifier.unwatch(payload.userId, login)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            except StoreUnavailableError as exc:
                raise _store_unavailable(exc) from exc
            return {"success": True, "username": login, "watching": payload.watching}

        return app

    def run(self, **kwargs: Any) -> None:
        """
        Start the service using uvicorn.

        Args:
            **kwargs: Additional arguments passed to ``uvicorn.run()``.
        """
        try:
            import uvicorn
        except ImportError:
            raise ImportError(
                "uvicorn is required to run the profile service. "
                "Install it with: pip install uvicorn"
            )

        uvicorn.run(
            self.create_app(),
            host=kwargs.pop("host", self.runtime.settings.service_host),
            port=kwargs.pop("port", self.runtime.settings.service_port),
            **kwargs,
        )
