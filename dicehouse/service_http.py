# FILE: dicehouse/service_http.py
from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from starlette.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from .auth import AuthContext, Authorizer, require_admin
from .config import Settings, load_settings
from .events import MemoryEventSink, event_to_dict
from .ledger import (
    AuthorizationError,
    Ledger,
    LedgerError,
    NotFoundError,
    ReentrancyError,
    SolvencyError,
    TransferError,
    ValidationError,
)
from .logging import RequestLogMiddleware, get_logger
from .randomness import RandomnessSource
from .schemas import (
    AuditResponse,
    BalanceResponse,
    BetRequest,
    ContractStatsView,
    ErrorResponse,
    EventsResponse,
    FundsRequest,
    GamesPage,
    GameView,
    PlayerStatsView,
    ReceiptView,
    TreasuryRequest,
)
from .stats import StatsAggregator
from .transfer import TransferGateway
from .treasury import TreasuryControl

# ---------------------------------------------------------------------------
# HTTP metrics (module level so repeated create_app calls share them)
# ---------------------------------------------------------------------------

_REQ_COUNTER = Counter("dice_http_requests_total", "HTTP requests", ["route", "status"])
_REQ_LATENCY = Histogram(
    "dice_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["route"],
)

_MAX_PAGE = 500

# Most specific class first; first isinstance match wins.
_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (SolvencyError, 409),
    (ReentrancyError, 409),
    (TransferError, 502),
)


def _status_for(exc: LedgerError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 500


# Documented error body for every status a LedgerError can map to.
_ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    code: {"model": ErrorResponse} for _, code in _STATUS_BY_ERROR
}


def create_app(
    *,
    settings: Optional[Settings] = None,
    ledger: Optional[Ledger] = None,
    gateway: Optional[TransferGateway] = None,
    randomness: Optional[RandomnessSource] = None,
    admin_token: Optional[str] = None,
) -> FastAPI:
    """
    Build the HTTP surface around one ledger.

    Public plane: bets, game history, stats, unsolicited funds, recent events.
    Admin plane (/admin): deposit, withdraw and audit, guarded by
    X-Dice-Admin-Token (DICE_ADMIN_TOKEN when `admin_token` is not given)
    and X-Dice-Actor, which must be one of the configured treasury actors.
    """
    if ledger is None:
        settings = settings or load_settings()
        ledger = Ledger(settings, randomness=randomness, gateway=gateway)
    else:
        settings = ledger.settings

    logger = get_logger("dicehouse.http", level=settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        responses=_ERROR_RESPONSES,
    )

    sink = MemoryEventSink(maxlen=settings.event_buffer_size)
    ledger.events.subscribe(sink)
    stats = StatsAggregator(ledger)
    treasury = TreasuryControl(ledger)
    authorizer = Authorizer(settings.treasury_actor_set())
    token = admin_token if admin_token is not None else os.environ.get("DICE_ADMIN_TOKEN")
    config_hash = settings.config_hash()

    app.state.settings = settings
    app.state.ledger = ledger
    app.state.stats = stats
    app.state.treasury = treasury
    app.state.events = sink

    # ---------------------------------------------------------------------
    # Middleware and error mapping
    # ---------------------------------------------------------------------

    @app.middleware("http")
    async def metrics_and_version(request: Request, call_next):
        t0 = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        label = getattr(route, "path", None) or "unmatched"
        _REQ_LATENCY.labels(label).observe(max(0.0, time.perf_counter() - t0))
        _REQ_COUNTER.labels(label, str(response.status_code)).inc()
        response.headers["X-Dice-Version"] = settings.version
        response.headers["X-Dice-Config-Hash"] = config_hash
        return response

    app.add_middleware(RequestLogMiddleware)

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        code = _status_for(exc)
        logger.info(
            "request rejected",
            extra={"status": code, "reason": exc.reason, "path": request.url.path},
        )
        return JSONResponse(status_code=code, content={"error": exc.reason, "detail": str(exc)})

    # ---------------------------------------------------------------------
    # Health / version / metrics
    # ---------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True, "config_hash": config_hash}

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        view = ledger.view()
        return {"ready": True, "games": view.game_count, "chain_head": view.chain_head}

    @app.get("/version")
    def version() -> Dict[str, Any]:
        return {
            "app": settings.app_name,
            "version": settings.version,
            "config_hash": config_hash,
            "config_origin": settings.config_origin,
            "unit": settings.unit,
            "min_stake": settings.min_stake,
            "max_stake": settings.max_stake,
            "house_edge_pct": settings.house_edge_pct,
            "payout_multiplier": settings.payout_multiplier,
        }

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ---------------------------------------------------------------------
    # Public plane
    # ---------------------------------------------------------------------

    @app.post("/v1/bets", response_model=ReceiptView)
    def place_bet(req: BetRequest) -> ReceiptView:
        receipt = ledger.resolve_bet(req.player, req.stake, req.prediction)
        return ReceiptView.from_receipt(receipt)

    @app.get("/v1/games", response_model=GamesPage)
    def list_games(
        offset: int = Query(0, ge=0),
        limit: int = Query(50, ge=1, le=_MAX_PAGE),
        player: Optional[str] = None,
    ) -> GamesPage:
        games = ledger.games(offset=offset, limit=limit, player=player)
        return GamesPage(
            items=[GameView.from_game(g) for g in games],
            next_game_id=ledger.next_game_id,
        )

    @app.get("/v1/games/{game_id}", response_model=ReceiptView)
    def get_game(game_id: int) -> ReceiptView:
        return ReceiptView.from_receipt(ledger.receipt(game_id))

    @app.get("/v1/players/{player}/stats", response_model=PlayerStatsView)
    def player_stats(player: str) -> PlayerStatsView:
        return PlayerStatsView.from_stats(player, stats.player_stats(player))

    @app.get("/v1/stats", response_model=ContractStatsView)
    def contract_stats() -> ContractStatsView:
        return ContractStatsView.from_stats(stats.contract_stats())

    @app.post("/v1/funds", response_model=BalanceResponse)
    def receive_funds(req: FundsRequest) -> BalanceResponse:
        return BalanceResponse(house_balance=treasury.receive_unsolicited_funds(req.amount, req.sender))

    @app.get("/v1/events", response_model=EventsResponse)
    def recent_events(limit: int = Query(100, ge=0, le=_MAX_PAGE)) -> EventsResponse:
        return EventsResponse(items=[event_to_dict(e) for e in sink.recent(limit)])

    # ---------------------------------------------------------------------
    # Admin plane
    # ---------------------------------------------------------------------

    admin = require_admin(authorizer, token)
    router = APIRouter(prefix="/admin")

    @router.post("/deposit", response_model=BalanceResponse)
    def deposit(req: TreasuryRequest, auth: AuthContext = Depends(admin)) -> BalanceResponse:
        return BalanceResponse(house_balance=treasury.deposit(req.amount, auth))

    @router.post("/withdraw", response_model=BalanceResponse)
    def withdraw(req: TreasuryRequest, auth: AuthContext = Depends(admin)) -> BalanceResponse:
        return BalanceResponse(house_balance=treasury.withdraw(req.amount, auth))

    @router.get("/audit", response_model=AuditResponse)
    def audit(auth: AuthContext = Depends(admin)) -> AuditResponse:
        if not auth.privileged:
            raise AuthorizationError("audit requires the treasury scope")
        return AuditResponse(audit=ledger.audit(), chain=ledger.verify_chain())

    app.include_router(router)
    return app
