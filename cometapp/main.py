# cometapp/main.py
from __future__ import annotations

import logging
import os
import traceback
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from cometapp.api.routes import api as _routes_router
from cometapp.core.aggregator import HealthRegistry, SourceAggregationEngine
from cometapp.core.constants import PROVIDER_COBS, PROVIDER_JPL, PROVIDER_SKYLIVE
from cometapp.core.sources import CobsClient, HorizonsClient, ProviderSettings, SkyLiveClient
from cometapp.utils.cache import CachePolicy, CacheStore, FileStore
from cometapp.utils.config import load_config
from cometapp.utils.dedupe import RequestDeduplicator
from cometapp.utils.metrics import (
    CONTENT_TYPE_LATEST,
    GAUGE_APP_UP,
    MET_REQUESTS,
    REQ_LATENCY,
    export_prometheus,
)
from cometapp.version import VERSION

log = logging.getLogger("cometapp")


# ───────────────────────── wiring ─────────────────────────
def build_cache(cfg: Any) -> CacheStore:
    c = cfg.cache
    schema = int(c.get("schema_version", 1))
    policies = {
        name: CachePolicy(
            max_age=float(p["max_age"]),
            stale_window=float(p["stale_window"]),
            schema_version=int(p.get("schema_version", schema)),
        )
        for name, p in (c.get("policies") or {}).items()
    }
    store = FileStore(c["dir"]) if c.get("persist") else None
    return CacheStore(policies, store=store)


def build_engine(cfg: Any, http: httpx.AsyncClient) -> SourceAggregationEngine:
    prov = cfg.providers
    ua = cfg.get("http", {}).get("user_agent", f"cometapp/{VERSION}")
    cobs = CobsClient(http, ProviderSettings.from_config(prov[PROVIDER_COBS]),
                      designation=cfg.target.cobs_designation, user_agent=ua)
    jpl = HorizonsClient(http, ProviderSettings.from_config(prov[PROVIDER_JPL]), user_agent=ua)
    sky = SkyLiveClient(http, ProviderSettings.from_config(prov[PROVIDER_SKYLIVE]), user_agent=ua)
    cons = cfg.get("consistency", {})
    return SourceAggregationEngine(
        cobs, jpl, sky,
        cache=build_cache(cfg),
        dedup=RequestDeduplicator(),
        health=HealthRegistry(),
        magnitude_tolerance=float(cons.get("magnitude_tolerance", 0.5)),
        position_tolerance_arcsec=float(cons.get("position_tolerance_arcsec", 5.0)),
    )


# ───────────────────────── helpers: logging & errors ─────────────────────────
def _configure_logging() -> None:
    gerr = logging.getLogger("gunicorn.error")
    if gerr.handlers:
        log.handlers = gerr.handlers
        log.setLevel(gerr.level)
    else:
        logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))


def _register_errors(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _invalid(request: Request, e: RequestValidationError):
        log.warning("400 at %s %s: %s", request.method, request.url.path, e.errors())
        return JSONResponse(
            {"ok": False, "error": "validation_error", "details": jsonable_errors(e), "path": request.url.path},
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http(request: Request, e: StarletteHTTPException):
        log.warning("HTTP %s at %s %s: %s", e.status_code, request.method, request.url.path, e.detail)
        return JSONResponse(
            {"ok": False, "error": "http_error", "code": e.status_code, "message": e.detail,
             "path": request.url.path},
            status_code=e.status_code,
        )

    @app.exception_handler(Exception)
    async def _any(request: Request, e: Exception):
        tb = traceback.format_exc()
        log.error("UNHANDLED %s at %s %s\n%s", type(e).__name__, request.method, request.url.path, tb)
        return JSONResponse(
            {"ok": False, "error": "internal_error", "type": type(e).__name__, "message": str(e),
             "path": request.url.path},
            status_code=500,
        )


def jsonable_errors(e: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in e.errors()
    ]


# ───────────────────────── lifespan ─────────────────────────
@asynccontextmanager
async def _lifespan(app: FastAPI):
    owned: Optional[httpx.AsyncClient] = None
    if getattr(app.state, "engine", None) is None:
        owned = httpx.AsyncClient(follow_redirects=True)
        app.state.engine = build_engine(app.state.cfg, owned)
    GAUGE_APP_UP.set(1.0)
    log.info("App started; version=%s persistent_cache=%s", VERSION, app.state.engine.cache.persistent)
    try:
        yield
    finally:
        await app.state.engine.drain()
        if owned is not None:
            await owned.aclose()
            app.state.engine = None
        GAUGE_APP_UP.set(0.0)


# ───────────────────────── app factory ─────────────────────────
def create_app(cfg: Any = None, engine: Optional[SourceAggregationEngine] = None) -> FastAPI:
    _configure_logging()
    cfg = cfg if cfg is not None else load_config()

    app = FastAPI(title="Comet 3I/ATLAS API", version=VERSION, lifespan=_lifespan)
    app.state.cfg = cfg
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.get("http", {}).get("cors_allow_origin", "*")],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=600,
    )

    @app.middleware("http")
    async def _timing(request: Request, call_next):
        p = request.url.path
        tracked = p.startswith("/api/") or p in ("/health", "/metrics")
        t0 = perf_counter()
        try:
            return await call_next(request)
        finally:
            if tracked:
                MET_REQUESTS.labels(route=p).inc()
                REQ_LATENCY.labels(route=p).observe(perf_counter() - t0)

    _register_errors(app)

    @app.get("/")
    def root():
        return {"ok": True, "service": "comet-backend", "health": "/health"}

    @app.get("/health")
    def health():
        return {"ok": True, "status": "ok", "version": VERSION}

    @app.get("/metrics")
    def metrics_endpoint():
        GAUGE_APP_UP.set(1.0)
        return Response(export_prometheus(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(_routes_router)
    return app


# ───────────────────────── app instance ─────────────────────────
app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
