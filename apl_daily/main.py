from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Literal, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from apl_daily.bookmarks import BookmarkRegistry
from apl_daily.catalog import PatternCatalog, load_catalog
from apl_daily.config import Settings
from apl_daily.daily import CheckResult, DailyPattern, PatternCheck, pattern_deep_link
from apl_daily.errors import AplDailyError, StoreError, WebhookVerificationError
from apl_daily.logs import EndpointMetrics, EventLog, default_event_log
from apl_daily.notifications import Notification, NotificationDispatcher, build_http_client
from apl_daily.selector import DailySelector
from apl_daily.store import StateStore, StoreKeys, open_store
from apl_daily.subscriptions import NotificationSubscription, SubscriptionRegistry, parse_endpoint_url
from apl_daily.verify import EventVerifier, build_verifier
from apl_daily.webhook import WebhookIngest


class BookmarkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pattern_id: int = Field(alias="patternId", gt=0)
    action: Literal["add", "remove"]


class SaveNotificationRequest(BaseModel):
    url: str = Field(min_length=1)
    token: str = Field(min_length=1)

    @field_validator("url")
    @classmethod
    def _endpoint_url(cls, value: str) -> str:
        return parse_endpoint_url(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Services:
    settings: Settings
    store: StateStore
    keys: StoreKeys
    catalog: PatternCatalog
    selector: DailySelector
    daily: DailyPattern
    subscriptions: SubscriptionRegistry
    bookmarks: BookmarkRegistry
    dispatcher: NotificationDispatcher
    check: PatternCheck
    webhook: WebhookIngest
    http_client: httpx.AsyncClient
    log: EventLog
    metrics: EndpointMetrics = field(default_factory=EndpointMetrics)
    clock: Callable[[], datetime] = _utcnow
    data_backend_mode: str = "memory"
    last_check: Optional[dict] = None


async def build_services(
    settings: Settings,
    store: Optional[StateStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    verifier: Optional[EventVerifier] = None,
    catalog: Optional[PatternCatalog] = None,
    clock: Optional[Callable[[], datetime]] = None,
    log: Optional[EventLog] = None,
) -> Services:
    log = log or default_event_log
    data_backend_mode = "injected"
    if store is None:
        store, data_backend_mode = await open_store(settings, log)
    if catalog is None:
        catalog = load_catalog(settings.patterns_path)
    selector = DailySelector.for_catalog(catalog, settings.selection_seed)
    if http_client is None:
        http_client = build_http_client(settings.notification_timeout_seconds)
    if verifier is None:
        verifier = build_verifier(http_client, settings.neynar_hub_url, settings.neynar_api_key)

    keys = StoreKeys(settings.key_prefix)
    subscriptions = SubscriptionRegistry(store, keys, log)
    dispatcher = NotificationDispatcher(subscriptions, http_client, settings.notification_concurrency, log)
    daily = DailyPattern(store, keys, catalog, selector, settings.run_counter_ttl_seconds)
    log.emit("catalog_loaded", pattern_count=len(catalog), seed=settings.selection_seed)
    return Services(
        settings=settings,
        store=store,
        keys=keys,
        catalog=catalog,
        selector=selector,
        daily=daily,
        subscriptions=subscriptions,
        bookmarks=BookmarkRegistry(store, keys),
        dispatcher=dispatcher,
        check=PatternCheck(daily, dispatcher, settings.app_url, log),
        webhook=WebhookIngest(verifier, subscriptions, dispatcher, settings.app_url, log),
        http_client=http_client,
        log=log,
        clock=clock or _utcnow,
        data_backend_mode=data_backend_mode,
    )


def _services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


def _user_id(x_farcaster_fid: Optional[str], user_id: Optional[str]) -> int:
    raw = (x_farcaster_fid or user_id or "").strip()
    if not raw:
        raise HTTPException(status_code=400, detail="No FID provided")
    try:
        fid = int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid FID") from None
    if fid <= 0:
        raise HTTPException(status_code=400, detail="Invalid FID")
    return fid


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="APL Daily API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services
    app.state.owns_services = services is None

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_errors(exc)},
        )

    @app.on_event("startup")
    async def startup() -> None:
        if app.state.services is None:
            app.state.services = await build_services(settings or Settings.from_env())
        s = app.state.services
        s.log.emit("service_started", data_backend_mode=s.data_backend_mode, pattern_count=len(s.catalog))

    @app.on_event("shutdown")
    async def shutdown() -> None:
        s = app.state.services
        if s is None or not app.state.owns_services:
            return
        await s.http_client.aclose()
        await s.store.close()

    @app.get("/health")
    async def health(request: Request) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            return {
                "status": "ok",
                "pattern_count": len(s.catalog),
                "data_backend_mode": s.data_backend_mode,
            }
        except Exception:
            ok = False
            raise
        finally:
            s.metrics.record("/health", (time.perf_counter() - started) * 1000, ok)

    @app.get("/api/patterns")
    async def list_patterns(request: Request) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            return {
                "patterns": [{"id": p.id, "title": p.title} for p in s.catalog.all()],
                "count": len(s.catalog),
            }
        except Exception:
            ok = False
            raise
        finally:
            s.metrics.record("/api/patterns", (time.perf_counter() - started) * 1000, ok)

    @app.get("/api/pattern/current")
    async def current_pattern(request: Request) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            pattern = await s.daily.current(s.clock())
            return {"pattern": pattern.to_dict()}
        except AplDailyError as ex:
            ok = False
            s.log.error("current_pattern_failed", error=str(ex))
            raise HTTPException(status_code=500, detail="Failed to get current pattern") from ex
        finally:
            s.metrics.record("/api/pattern/current", (time.perf_counter() - started) * 1000, ok)

    @app.get("/api/pattern/{pattern_id}")
    async def get_pattern(pattern_id: int, request: Request) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            pattern = s.catalog.get(pattern_id)
            if pattern is None:
                raise HTTPException(status_code=404, detail="Pattern not found")
            return pattern.to_dict()
        except Exception:
            ok = False
            raise
        finally:
            s.metrics.record("/api/pattern/{id}", (time.perf_counter() - started) * 1000, ok)

    async def _neighbor(request: Request, pattern_id: int, step: int, endpoint: str) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            neighbor_id = s.selector.neighbor(pattern_id, step)
            pattern = s.catalog.get(neighbor_id) if neighbor_id is not None else None
            if pattern is None:
                raise HTTPException(status_code=404, detail="Pattern not found")
            return {"pattern": pattern.to_dict()}
        except Exception:
            ok = False
            raise
        finally:
            s.metrics.record(endpoint, (time.perf_counter() - started) * 1000, ok)

    @app.get("/api/pattern/{pattern_id}/next")
    async def next_pattern(pattern_id: int, request: Request) -> dict:
        return await _neighbor(request, pattern_id, 1, "/api/pattern/{id}/next")

    @app.get("/api/pattern/{pattern_id}/previous")
    async def previous_pattern(pattern_id: int, request: Request) -> dict:
        return await _neighbor(request, pattern_id, -1, "/api/pattern/{id}/previous")

    @app.get("/api/bookmarks")
    async def get_bookmarks(
        request: Request,
        patternId: Optional[int] = None,
        x_farcaster_fid: Optional[str] = Header(default=None),
        user_id: Optional[str] = Header(default=None),
    ) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            fid = _user_id(x_farcaster_fid, user_id)
            if patternId is not None:
                return {"isBookmarked": await s.bookmarks.is_bookmarked(fid, patternId)}
            return {"bookmarks": await s.bookmarks.list(fid)}
        except StoreError as ex:
            ok = False
            s.log.error("bookmarks_read_failed", operation=ex.operation, key=ex.key, error=str(ex))
            raise HTTPException(status_code=500, detail="Failed to get bookmarks") from ex
        except Exception:
            ok = False
            raise
        finally:
            s.metrics.record("/api/bookmarks:get", (time.perf_counter() - started) * 1000, ok)

    @app.post("/api/bookmarks")
    async def update_bookmark(
        req: BookmarkRequest,
        request: Request,
        x_farcaster_fid: Optional[str] = Header(default=None),
        user_id: Optional[str] = Header(default=None),
    ) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            fid = _user_id(x_farcaster_fid, user_id)
            if req.pattern_id not in s.catalog:
                raise HTTPException(status_code=404, detail="Pattern not found")
            if req.action == "add":
                await s.bookmarks.add(fid, req.pattern_id)
            else:
                await s.bookmarks.remove(fid, req.pattern_id)
            s.log.emit("bookmark_updated", user_id=fid, pattern_id=req.pattern_id, action=req.action)
            return {"success": True}
        except StoreError as ex:
            ok = False
            s.log.error("bookmark_update_failed", key=ex.key, action=req.action, error=str(ex))
            raise HTTPException(status_code=500, detail=f"Failed to {req.action} bookmark") from ex
        except Exception:
            ok = False
            raise
        finally:
            s.metrics.record("/api/bookmarks:post", (time.perf_counter() - started) * 1000, ok)

    @app.post("/api/webhook")
    async def webhook(request: Request) -> JSONResponse:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            try:
                body = await request.json()
            except ValueError:
                return JSONResponse(status_code=400, content={"success": False, "error": "Invalid JSON body"})
            result = await s.webhook.handle(body)
            return JSONResponse(content={"success": True, **result.to_dict()})
        except WebhookVerificationError as ex:
            ok = False
            s.log.error("webhook_rejected", kind=type(ex).__name__, error=str(ex))
            return JSONResponse(status_code=ex.status_code, content={"success": False, "error": str(ex)})
        except StoreError as ex:
            ok = False
            s.log.error("webhook_store_failed", operation=ex.operation, key=ex.key, error=str(ex))
            return JSONResponse(status_code=500, content={"success": False, "error": "Failed to update subscription"})
        except Exception:
            ok = False
            raise
        finally:
            s.metrics.record("/api/webhook", (time.perf_counter() - started) * 1000, ok)

    @app.get("/api/notifications/check")
    async def check_notifications(request: Request, advance: bool = False) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            result: CheckResult = await s.check.run(s.clock(), advance=advance)
            s.last_check = {"checked_at": s.clock().isoformat(), **result.to_dict()}
            return {"success": True, **result.to_dict()}
        except AplDailyError as ex:
            ok = False
            s.log.error("pattern_check_failed", error=str(ex))
            raise HTTPException(status_code=500, detail="Failed to check for pattern changes") from ex
        finally:
            s.metrics.record("/api/notifications/check", (time.perf_counter() - started) * 1000, ok)

    @app.post("/api/notifications/save")
    async def save_notification_details(
        req: SaveNotificationRequest,
        request: Request,
        x_farcaster_fid: Optional[str] = Header(default=None),
        user_id: Optional[str] = Header(default=None),
    ) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            fid = _user_id(x_farcaster_fid, user_id)
            await s.subscriptions.save(fid, NotificationSubscription(endpoint_url=req.url, auth_token=req.token))
            return {"success": True}
        except StoreError as ex:
            ok = False
            s.log.error("subscription_save_failed", key=ex.key, error=str(ex))
            raise HTTPException(status_code=500, detail="Failed to save notification details") from ex
        except Exception:
            ok = False
            raise
        finally:
            s.metrics.record("/api/notifications/save", (time.perf_counter() - started) * 1000, ok)

    @app.get("/api/notifications/users")
    async def notification_users(request: Request) -> dict:
        s = _services(request)
        started = time.perf_counter()
        ok = True
        try:
            users = await s.subscriptions.all()
            return {"users": [user_id for user_id, _ in users], "count": len(users)}
        except StoreError as ex:
            ok = False
            s.log.error("notification_users_failed", error=str(ex))
            raise HTTPException(status_code=500, detail="Failed to get notification users") from ex
        finally:
            s.metrics.record("/api/notifications/users", (time.perf_counter() - started) * 1000, ok)

    @app.post("/api/notifications/test")
    async def test_notification(request: Request, fid: int) -> dict:
        s = _services(request)
        if not s.settings.is_development:
            raise HTTPException(status_code=403, detail="This endpoint is only available in development")
        started = time.perf_counter()
        ok = True
        try:
            pattern = await s.daily.current(s.clock())
            outcome = await s.dispatcher.send(
                fid,
                Notification(
                    title=f"[TEST] {pattern.title}",
                    body=f"Check out Pattern! {pattern.id}",
                    target_url=pattern_deep_link(s.settings.app_url, pattern.id),
                ),
            )
            return {"success": outcome.state.value == "success", "outcome": outcome.to_dict()}
        except AplDailyError as ex:
            ok = False
            raise HTTPException(status_code=500, detail="Failed to send test notification") from ex
        finally:
            s.metrics.record("/api/notifications/test", (time.perf_counter() - started) * 1000, ok)

    @app.get("/api/monitoring/dashboard")
    async def monitoring_dashboard(request: Request) -> dict:
        s = _services(request)
        return {
            "data_backend_mode": s.data_backend_mode,
            "pattern_count": len(s.catalog),
            "selection_seed": s.selector.seed,
            "last_check": s.last_check,
            "traffic_metrics": s.metrics.snapshot(),
            "recent_logs": s.log.tail(80),
        }

    return app


def jsonable_errors(exc: RequestValidationError) -> List[dict]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


app = create_app()
