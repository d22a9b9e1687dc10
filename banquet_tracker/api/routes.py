from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Optional
from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import logging
import tracemalloc
import time

from banquet_tracker.core.config import (
    CORS_ALLOW_ORIGINS,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_HEADERS,
    get_backfill_on_startup,
    get_dev_create_all,
    get_enable_db,
    get_trade_allow_overdraw,
)
from banquet_tracker.core.database import check_database, init_db, is_db_enabled, shutdown_db, start_db
from banquet_tracker.core.engine import BanquetEngine
from banquet_tracker.core.errors import BanquetError
from banquet_tracker.core.metrics import metrics
from banquet_tracker.core.state import banquet_engine
from banquet_tracker.core.time_utils import isoformat_utc
from banquet_tracker.core.trade_events import trade_payload
from banquet_tracker.models import Boost, Player, RateRecord, ResourceType, Site, Snapshot
from banquet_tracker.storage import InMemoryStorage, SqlStorage
from banquet_tracker.systems.views import stock_line

logger = logging.getLogger(__name__)

# Memory figures for the health endpoint
tracemalloc.start()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan context: selects the storage backend and backfills missing rows."""
    if get_enable_db():
        try:
            sessionmaker = await start_db()
            if get_dev_create_all():
                await init_db()
            await banquet_engine.use_storage(SqlStorage(sessionmaker))
        except Exception:
            # Keep serving from memory; /healthz reports the database as down
            logger.exception("db_startup_failed")
    logger.info(
        "startup_config",
        extra={
            "ENABLE_DB": bool(get_enable_db()),
            "DEV_CREATE_ALL": bool(get_dev_create_all()),
            "db_active": is_db_enabled(),
            "trade_allow_overdraw": bool(get_trade_allow_overdraw()),
        },
    )
    if get_backfill_on_startup():
        started = time.perf_counter()
        created = await banquet_engine.backfill_rows()
        metrics.record_timer("backfill.duration_s", time.perf_counter() - started)
        logger.info("startup_backfill", extra={"rows_created": created})
    try:
        yield
    finally:
        if isinstance(banquet_engine.storage, SqlStorage):
            await banquet_engine.use_storage(InMemoryStorage())
        # Dispose database engines within the running loop to avoid cross-loop termination
        await shutdown_db()


app = FastAPI(title="Banquet Tracker", version="1.0.0", lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.perf_counter() - start
        route_obj = request.scope.get("route")
        route_path = getattr(route_obj, "path", request.url.path)
        status = getattr(response, "status_code", 500)
        metrics.record_http(request.method, route_path, status, duration)


def get_engine() -> BanquetEngine:
    """Dependency returning the shared engine; tests override it with a fresh one."""
    return banquet_engine


def _http_error(exc: BanquetError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail=str(exc))


# --- request bodies ---

class PlayerCreateRequest(BaseModel):
    name: str
    capacity: Optional[int] = None


class CapacityRequest(BaseModel):
    capacity: int


class SiteCreateRequest(BaseModel):
    name: str


class ProductionRequest(BaseModel):
    daily_amount: float
    # Value read off a boosted display ("sous carte"); divided by the active multiplier
    boosted: bool = False


class ManualAmountRequest(BaseModel):
    amount: float


class BoostCreateRequest(BaseModel):
    banquet_type: str
    multiplier: int


class BoostRetimeRequest(BaseModel):
    expires_at: Optional[datetime] = None
    hours_remaining: Optional[float] = None


class TransferRequest(BaseModel):
    from_site_id: int
    to_site_id: int
    banquet_type: str
    amount: float


class TradeRequest(BaseModel):
    from_player_id: int
    to_player_id: int
    from_site_id: int
    to_site_id: Optional[int] = None
    banquet_type: str
    amount: float


# --- payload helpers ---

def _player_payload(player: Player) -> dict:
    return {
        "id": player.id,
        "name": player.name,
        "capacity": player.capacity,
        "created_at": isoformat_utc(player.created_at),
    }


def _site_payload(site: Site) -> dict:
    return {
        "id": site.id,
        "player_id": site.player_id,
        "name": site.name,
        "created_at": isoformat_utc(site.created_at),
    }


def _snapshot_payload(snap: Snapshot) -> dict:
    return {
        "site_id": snap.site_id,
        "banquet_type": snap.resource_type.value,
        "amount": snap.amount,
        "as_of": isoformat_utc(snap.as_of),
        "version": snap.version,
    }


def _rate_payload(rate: RateRecord) -> dict:
    return {"site_id": rate.site_id, "banquet_type": rate.resource_type.value, "daily_amount": rate.daily_amount}


def _boost_payload(boost: Boost) -> dict:
    return {
        "id": boost.id,
        "player_id": boost.player_id,
        "banquet_type": boost.resource_type.value,
        "multiplier": boost.multiplier,
        "activated_at": isoformat_utc(boost.activated_at),
        "expires_at": isoformat_utc(boost.expires_at),
    }


# --- service endpoints ---

@app.get("/")
async def root():
    """Simple banner indicating server readiness."""
    return {"message": "Banquet Tracker", "status": "running"}


@app.get("/healthz")
async def healthz(engine: BanquetEngine = Depends(get_engine)):
    """Health check endpoint providing basic service metrics."""
    current, peak = tracemalloc.get_traced_memory()
    db_ok = await check_database()
    return {
        "status": "ok",
        "storage": type(engine.storage).__name__,
        "db": {"enabled": is_db_enabled(), "ok": db_ok},
        "uptime_s": metrics.uptime_s(),
        "memory": {"current_bytes": current, "peak_bytes": peak},
    }


@app.get("/metrics")
async def get_metrics():
    return metrics.snapshot()


# --- players and villages ---

@app.get("/players")
async def list_players(engine: BanquetEngine = Depends(get_engine)):
    return [_player_payload(p) for p in await engine.list_players()]


@app.post("/players", status_code=201)
async def create_player(payload: PlayerCreateRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        player = await engine.create_player(payload.name, capacity=payload.capacity)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return _player_payload(player)


@app.get("/players/{player_id}")
async def get_player(player_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        player = await engine.get_player(player_id)
        sites = await engine.list_sites(player_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return {**_player_payload(player), "sites": [_site_payload(s) for s in sites]}


@app.delete("/players/{player_id}")
async def delete_player(player_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        await engine.delete_player(player_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return {"message": f"Player {player_id} deleted"}


@app.put("/players/{player_id}/capacity")
async def set_player_capacity(player_id: int, payload: CapacityRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        player = await engine.set_player_capacity(player_id, payload.capacity)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return _player_payload(player)


@app.get("/players/{player_id}/sites")
async def list_sites(player_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        sites = await engine.list_sites(player_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return [_site_payload(s) for s in sites]


@app.post("/players/{player_id}/sites", status_code=201)
async def create_site(player_id: int, payload: SiteCreateRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        site = await engine.create_site(player_id, payload.name)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return _site_payload(site)


@app.delete("/sites/{site_id}")
async def delete_site(site_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        await engine.delete_site(site_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return {"message": f"Village {site_id} deleted"}


# --- read views ---

@app.get("/players/{player_id}/dashboard")
async def get_dashboard(player_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        dashboard = await engine.get_dashboard(player_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return asdict(dashboard)


@app.get("/players/{player_id}/totals")
async def get_player_totals(player_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        totals = await engine.get_player_totals(player_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return {
        rt.value: {"total": t.total, "need": t.need, "site_count": t.site_count}
        for rt, t in totals.items()
    }


@app.get("/players/{player_id}/throughput")
async def get_player_throughput(player_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        return {rt.value: await engine.get_hourly_throughput(player_id, rt) for rt in ResourceType}
    except BanquetError as exc:
        raise _http_error(exc) from exc


@app.get("/sites/{site_id}/needs")
async def get_site_needs(site_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        needs = await engine.get_site_needs(site_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return {rt.value: need for rt, need in needs.items()}


@app.get("/sites/{site_id}/stocks/{banquet_type}")
async def get_stock(site_id: int, banquet_type: str, engine: BanquetEngine = Depends(get_engine)):
    try:
        rt = ResourceType.parse(banquet_type)
        reading = await engine.get_stock(site_id, rt)
        player = await engine.get_player(reading.site.player_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    line = stock_line(rt, reading.raw_amount, player.capacity, reading.daily_amount, reading.multiplier)
    return {"site_id": site_id, **asdict(line), "snapshot": _snapshot_payload(reading.snapshot)}


# --- writes ---

@app.put("/sites/{site_id}/stocks/{banquet_type}")
async def set_manual_amount(site_id: int, banquet_type: str, payload: ManualAmountRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        rt = ResourceType.parse(banquet_type)
        snap = await engine.set_manual_amount(site_id, rt, payload.amount)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return _snapshot_payload(snap)


@app.post("/sites/{site_id}/reset")
async def reset_site(site_id: int, engine: BanquetEngine = Depends(get_engine)):
    """Banquet held: every stock of the village goes back to zero."""
    try:
        snaps = await engine.reset_site(site_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return {"site_id": site_id, "stocks": [_snapshot_payload(s) for s in snaps]}


@app.put("/sites/{site_id}/production/{banquet_type}")
async def set_production(site_id: int, banquet_type: str, payload: ProductionRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        rt = ResourceType.parse(banquet_type)
        rate = await engine.set_production_rate(site_id, rt, payload.daily_amount, boosted_input=payload.boosted)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return _rate_payload(rate)


@app.get("/players/{player_id}/boosts")
async def list_boosts(player_id: int, include_expired: bool = Query(False), engine: BanquetEngine = Depends(get_engine)):
    try:
        boosts = await engine.list_boosts(player_id, active_only=not include_expired)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return [_boost_payload(b) for b in boosts]


@app.post("/players/{player_id}/boosts", status_code=201)
async def activate_boost(player_id: int, payload: BoostCreateRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        rt = ResourceType.parse(payload.banquet_type)
        boost = await engine.activate_boost(player_id, rt, payload.multiplier)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return _boost_payload(boost)


@app.patch("/boosts/{boost_id}")
async def retime_boost(boost_id: int, payload: BoostRetimeRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        boost = await engine.retime_boost(boost_id, expires_at=payload.expires_at, hours_remaining=payload.hours_remaining)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return _boost_payload(boost)


@app.delete("/boosts/{boost_id}")
async def remove_boost(boost_id: int, engine: BanquetEngine = Depends(get_engine)):
    try:
        boost = await engine.remove_boost(boost_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return _boost_payload(boost)


@app.post("/transfers")
async def transfer_internal(payload: TransferRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        rt = ResourceType.parse(payload.banquet_type)
        result = await engine.transfer_internal(payload.from_site_id, payload.to_site_id, rt, payload.amount)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return {
        "banquet_type": rt.value,
        "amount": result.amount,
        "source": _snapshot_payload(result.source),
        "destination": _snapshot_payload(result.destination),
    }


@app.post("/trades", status_code=201)
async def execute_trade(payload: TradeRequest, engine: BanquetEngine = Depends(get_engine)):
    try:
        rt = ResourceType.parse(payload.banquet_type)
        result = await engine.execute_trade(
            payload.from_player_id,
            payload.to_player_id,
            payload.from_site_id,
            rt,
            payload.amount,
            to_site_id=payload.to_site_id,
        )
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return {
        "trade": dict(trade_payload(result.trade)),
        "delivered": result.delivered,
        "from_site_id": result.from_site_id,
        "to_site_id": result.to_site_id,
    }


@app.get("/trades")
async def list_trades(
    limit: Optional[int] = Query(None, ge=0, le=500),
    player_id: Optional[int] = Query(None),
    engine: BanquetEngine = Depends(get_engine),
):
    try:
        trades = await engine.list_trades(limit=limit, player_id=player_id)
    except BanquetError as exc:
        raise _http_error(exc) from exc
    return [dict(trade_payload(t)) for t in trades]
