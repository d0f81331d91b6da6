from __future__ import annotations

import hmac
import json
import math
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from filing_sync.api.ratelimit import RateLimitRule, TokenBucketLimiter, client_ip
from filing_sync.config import Config, load_config
from filing_sync.db import connect, filing_table_counts, get_app_config, init_db, table_count
from filing_sync.models import FAMILIES, FORM_345, parse_families
from filing_sync.sec.client import FormIndexClient
from filing_sync.sync.form345 import loaded_dataset_quarters
from filing_sync.sync.locks import SyncLockManager
from filing_sync.sync.orchestrator import LAST_RUN_KEY, SyncOptions, SyncOrchestrator
from filing_sync.sync.quarters import parse_quarter, quarter_of
from filing_sync.sync.state import SyncStateStore
from filing_sync.util.redact import redact, redact_mapping

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _debug(msg: str) -> None:
    print(f"[api] {redact(msg)}")


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, **extra})


def _authorized(request: Request, cfg: Config) -> bool:
    """Bearer CRON_SECRET, or the scheduler header when the deployment trusts it."""
    if cfg.TRUST_SCHEDULER_HEADER and request.headers.get(cfg.SCHEDULER_HEADER) == "1":
        return True
    secret = cfg.CRON_SECRET
    if not secret:
        return False
    got = request.headers.get("authorization") or ""
    return hmac.compare_digest(got.encode("utf-8"), f"Bearer {secret}".encode("utf-8"))


def create_app(
    cfg: Optional[Config] = None,
    *,
    fetcher: Any = None,
    limiter: Optional[TokenBucketLimiter] = None,
    locks: Optional[SyncLockManager] = None,
    today: Any = date.today,
) -> FastAPI:
    cfg = cfg or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg.validate()
        init_db(cfg.DB_DSN)
        _debug(f"ready (db={cfg.DB_DSN})")
        yield

    app = FastAPI(title="Filing Sync", version="0.1.0", lifespan=lifespan)
    app.state.cfg = cfg
    app.state.fetcher = fetcher or FormIndexClient.from_config(cfg)
    app.state.limiter = limiter or TokenBucketLimiter(
        idle_seconds=cfg.RATE_LIMIT_IDLE_SECONDS,
        sweep_seconds=cfg.RATE_LIMIT_SWEEP_SECONDS,
    )
    app.state.locks = locks or SyncLockManager(ttl_seconds=cfg.SYNC_LOCK_TTL_SECONDS)

    sync_rule = RateLimitRule(cfg.RATE_LIMIT_SYNC_REQUESTS, cfg.RATE_LIMIT_SYNC_WINDOW_SECONDS)
    api_rule = RateLimitRule(cfg.RATE_LIMIT_API_REQUESTS, cfg.RATE_LIMIT_API_WINDOW_SECONDS)

    # CORS only matters when a browser frontend on another origin calls the API.
    _cors_origins = [o.strip() for o in (cfg.CORS_ALLOW_ORIGINS or "").split(",") if o.strip()]
    if _cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=_cors_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def _rate_limit_and_headers(request: Request, call_next):
        path = request.url.path
        if path != "/health":
            klass, rule = ("sync", sync_rule) if path.startswith("/sync") else ("api", api_rule)
            key = f"{client_ip(request, trust_proxy=cfg.TRUST_PROXY_HEADERS)}:{klass}"
            if not app.state.limiter.check(key, rule):
                _debug(f"rate limited {key} {request.method} {path}")
                response = _error(429, "Rate limit exceeded")
                response.headers["Retry-After"] = str(int(math.ceil(rule.window_seconds)))
            else:
                response = await call_next(request)
        else:
            response = await call_next(request)
        for k, v in SECURITY_HEADERS.items():
            response.headers[k] = v
        return response

    def _run(options: SyncOptions) -> Dict[str, Any]:
        orch = SyncOrchestrator(cfg, fetcher=app.state.fetcher, locks=app.state.locks, today=today)
        with connect(cfg.DB_DSN) as conn:
            return orch.run(conn, options).as_dict()

    # -----------------------------
    # Health
    # -----------------------------

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok"}

    # -----------------------------
    # 13F / 13D/G sync
    # -----------------------------

    @app.post("/sync")
    def trigger_sync(
        request: Request,
        forms: Optional[str] = Query(None),
        force: bool = Query(False),
        dry_run: bool = Query(False, alias="dryRun"),
    ):
        if not _authorized(request, cfg):
            return _error(401, "Unauthorized")

        families = parse_families(forms, default=cfg.SYNC_DEFAULT_FORMS)
        if not families:
            valid = ", ".join(FAMILIES)
            return _error(400, f"Invalid form types. Valid values: {valid}")

        _debug(f"sync triggered {redact_mapping(dict(request.query_params))}")
        try:
            return _run(
                SyncOptions(
                    forms=families,
                    force=force,
                    dry_run=dry_run,
                    deadline_seconds=cfg.SYNC_DEADLINE_SECONDS,
                )
            )
        except Exception as e:
            _debug(f"sync failed: {e}")
            return _error(500, redact(e, [cfg.CRON_SECRET]), success=False)

    @app.get("/sync")
    def sync_status():
        try:
            with connect(cfg.DB_DSN) as conn:
                states = SyncStateStore(conn).all()
                raw = get_app_config(conn, LAST_RUN_KEY)
                counts = filing_table_counts(conn)
        except Exception as e:
            _debug(f"status failed: {e}")
            return _error(500, "Failed to fetch sync status")
        return {
            "sources": {k: (states[k].as_dict() if k in states else None) for k in FAMILIES},
            "last_run": json.loads(raw) if raw else None,
            "counts": counts,
        }

    # -----------------------------
    # Form 3/4/5 sync
    # -----------------------------

    @app.post("/sync/form345")
    def trigger_form345_sync(
        request: Request,
        quarter: Optional[str] = Query(None),
        current: bool = Query(False),
        dry_run: bool = Query(False, alias="dryRun"),
    ):
        if not _authorized(request, cfg):
            return _error(401, "Unauthorized")

        options = SyncOptions(
            forms=(FORM_345,),
            force=True,
            dry_run=dry_run,
            deadline_seconds=cfg.SYNC_DEADLINE_SECONDS,
        )
        if quarter:
            try:
                options.quarter = parse_quarter(quarter)
            except ValueError as e:
                return _error(400, str(e))
        elif current:
            options.current_only = True
        else:
            # Default: previous and current quarter.
            options.start = quarter_of(today()).previous()

        _debug(f"form345 sync triggered {redact_mapping(dict(request.query_params))}")
        try:
            return _run(options)
        except Exception as e:
            _debug(f"form345 sync failed: {e}")
            return _error(500, redact(e, [cfg.CRON_SECRET]), success=False)

    @app.get("/sync/form345")
    def form345_stats():
        try:
            with connect(cfg.DB_DSN) as conn:
                row = conn.execute(
                    "SELECT MAX(filing_date) AS latest FROM form345_submissions"
                ).fetchone()
                stats = {
                    "submissions": table_count(conn, "form345_submissions"),
                    "reporting_owners": table_count(conn, "form345_reporting_owners"),
                    "nonderiv_trans": table_count(conn, "form345_nonderiv_trans"),
                    "deriv_trans": table_count(conn, "form345_deriv_trans"),
                    "latest_filing_date": row["latest"] if row else None,
                    "last_processed_date": SyncStateStore(conn).watermark(FORM_345.key),
                    "datasets_loaded": loaded_dataset_quarters(conn),
                }
        except Exception as e:
            _debug(f"form345 stats failed: {e}")
            return _error(500, "Failed to fetch stats")
        return {"success": True, "stats": stats}

    return app


app = create_app()
