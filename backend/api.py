"""
FastAPI web backend for the poker escrow ledger.
Non-custodial: buy-ins and payouts are signed client-side, this service
serves the ledger view, host lifecycle actions and maintenance hooks.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import CORS_ORIGINS, CRON_SECRET, DATABASE_PATH, PENDING_PLAYER_GRACE_MINUTES
from database import Database, Game, PlayerStatus
from errors import (
    PokerEscrowError,
    GameNotFound,
    NotHost,
    InvalidTransition,
    GameClosed,
    TransactionInProgress,
    LedgerUnavailable,
    SettlementError,
)
from game import GameLifecycle, SettlementEngine
from cleanup import cleanup_pending_players
from profiles import ProfileLookup, resolve_profiles
from utils import is_valid_game_code

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Database
db = Database(DATABASE_PATH)

# Identity service client, wired by the deployment
profile_lookup: Optional[ProfileLookup] = None

app = FastAPI(title="Poker Escrow API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ===== MODELS =====

class CreateGameRequest(BaseModel):
    host_fid: int
    buy_in_amount: float
    currency: str = "USDC"
    location: Optional[str] = None


class HostActionRequest(BaseModel):
    host_fid: int


class SettlementPreviewRequest(BaseModel):
    host_fid: int
    chip_counts: Dict[str, Union[float, str]]


class GameResponse(BaseModel):
    game_id: str
    game_code: str
    host_fid: int
    buy_in_amount: float
    currency: str
    status: str
    location: Optional[str]
    escrow_tx_hash: Optional[str]
    payout_tx_hash: Optional[str]
    distribution_count: int
    created_at: str
    started_at: Optional[str]
    ended_at: Optional[str]


class PlayerResponse(BaseModel):
    player_id: str
    fid: int
    wallet_address: str
    total_buy_ins: int
    total_deposited: float
    final_chip_count: Optional[float]
    payout_amount: Optional[float]
    payout_sent: bool
    username: str
    display_name: str
    pfp_url: str


class GameDetailResponse(BaseModel):
    game: GameResponse
    players: List[PlayerResponse]
    pot: float


class PayoutLineResponse(BaseModel):
    player_id: str
    fid: int
    wallet_address: str
    chips: float
    deposited: float
    payout: float
    profit: float


class SettlementPreviewResponse(BaseModel):
    pot: float
    total_chips: float
    total_payout: float
    lines: List[PayoutLineResponse]


# ===== HELPERS =====

def game_to_response(game: Game) -> GameResponse:
    return GameResponse(
        game_id=game.game_id,
        game_code=game.game_code,
        host_fid=game.host_fid,
        buy_in_amount=game.buy_in_amount,
        currency=game.currency.value,
        status=game.status.value,
        location=game.location,
        escrow_tx_hash=game.escrow_tx_hash,
        payout_tx_hash=game.payout_tx_hash,
        distribution_count=game.distribution_count,
        created_at=game.created_at.isoformat(),
        started_at=game.started_at.isoformat() if game.started_at else None,
        ended_at=game.ended_at.isoformat() if game.ended_at else None,
    )


def error_to_http(error: Exception) -> HTTPException:
    """Map a domain error to the HTTP status the client acts on."""
    if isinstance(error, GameNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, NotHost):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, (InvalidTransition, GameClosed, TransactionInProgress)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, LedgerUnavailable):
        return HTTPException(status_code=503, detail="Ledger temporarily unavailable, please retry")
    if isinstance(error, (SettlementError, ValueError)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, PokerEscrowError):
        return HTTPException(status_code=400, detail=error.message)
    logger.error(f"Unhandled error: {error}", exc_info=error)
    return HTTPException(status_code=500, detail="Internal server error")


def log_task_failure(task: asyncio.Task):
    """Done-callback: surface the exception of a background task that died."""
    if task.cancelled():
        return
    error = task.exception()
    if error:
        logger.error(f"Background task {task.get_name()} failed: {error}", exc_info=error)


def get_game_or_404(game_id: str) -> Game:
    game = db.get_game(game_id)
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    return game


# ===== API ENDPOINTS =====

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


# === GAME ENDPOINTS ===

@app.post("/api/games/create")
async def create_game(request: CreateGameRequest) -> GameResponse:
    """Create a waiting game. On-chain registration happens client-side."""
    try:
        lifecycle = GameLifecycle(db)
        game = await lifecycle.create_game(
            host_fid=request.host_fid,
            buy_in_amount=request.buy_in_amount,
            currency=request.currency,
            location=request.location,
        )
        logger.info(f"Game created: {game.game_code} by fid {request.host_fid}")
        return game_to_response(game)
    except HTTPException:
        raise
    except Exception as e:
        raise error_to_http(e)


@app.get("/api/games/code/{game_code}")
async def get_game_by_code(game_code: str) -> GameResponse:
    """Look up a game by its shareable code."""
    valid, error = is_valid_game_code(game_code)
    if not valid:
        raise HTTPException(status_code=400, detail=error)

    try:
        game = db.get_game_by_code(game_code)
    except LedgerUnavailable as e:
        raise error_to_http(e)
    if not game:
        raise HTTPException(status_code=404, detail="Game not found")
    return game_to_response(game)


@app.get("/api/games/{game_id}")
async def get_game(game_id: str) -> GameDetailResponse:
    """Game details with confirmed players and the pot.

    Pending buy-ins are not shown and do not count toward the pot.
    """
    try:
        game = get_game_or_404(game_id)
        players = db.get_players(game_id, PlayerStatus.DEPOSITED)
        profiles = await resolve_profiles([p.fid for p in players], profile_lookup)

        player_responses = []
        for player in players:
            profile = profiles[player.fid]
            player_responses.append(PlayerResponse(
                player_id=player.player_id,
                fid=player.fid,
                wallet_address=player.wallet_address,
                total_buy_ins=player.total_buy_ins,
                total_deposited=player.total_deposited,
                final_chip_count=player.final_chip_count,
                payout_amount=player.payout_amount,
                payout_sent=player.payout_sent,
                username=profile.username,
                display_name=profile.display_name,
                pfp_url=profile.pfp_url,
            ))

        return GameDetailResponse(
            game=game_to_response(game),
            players=player_responses,
            pot=db.get_pot(game_id),
        )
    except HTTPException:
        raise
    except Exception as e:
        raise error_to_http(e)


@app.post("/api/games/{game_id}/start")
async def start_game(game_id: str, request: HostActionRequest) -> GameResponse:
    """waiting -> active (host only)."""
    try:
        game = GameLifecycle(db).start_game(game_id, request.host_fid)
        return game_to_response(game)
    except HTTPException:
        raise
    except Exception as e:
        raise error_to_http(e)


@app.post("/api/games/{game_id}/reopen")
async def reopen_game(game_id: str, request: HostActionRequest) -> GameResponse:
    """ended -> active so the host can edit the settlement (host only)."""
    try:
        game = GameLifecycle(db).reopen_game(game_id, request.host_fid)
        return game_to_response(game)
    except HTTPException:
        raise
    except Exception as e:
        raise error_to_http(e)


@app.post("/api/games/{game_id}/settlement/preview")
async def preview_settlement(game_id: str, request: SettlementPreviewRequest) -> SettlementPreviewResponse:
    """Compute payouts for the given chip counts without moving funds."""
    try:
        game = get_game_or_404(game_id)
        if game.host_fid != request.host_fid:
            raise NotHost("Only the host can settle this game")

        # Preview is pure; no escrow client needed
        settlement = SettlementEngine(db, escrow=None).preview(game_id, request.chip_counts)

        return SettlementPreviewResponse(
            pot=settlement.pot,
            total_chips=settlement.total_chips,
            total_payout=settlement.total_payout,
            lines=[
                PayoutLineResponse(
                    player_id=line.player.player_id,
                    fid=line.player.fid,
                    wallet_address=line.player.wallet_address,
                    chips=line.chips,
                    deposited=line.deposited,
                    payout=line.payout,
                    profit=line.profit,
                )
                for line in settlement.lines
            ],
        )
    except HTTPException:
        raise
    except Exception as e:
        raise error_to_http(e)


# === MAINTENANCE ===

@app.get("/api/cron/cleanup-pending-players")
async def cron_cleanup_pending_players(request: Request):
    """Delete abandoned pending buy-ins. Called by an external scheduler."""
    auth_header = request.headers.get("authorization")
    if not CRON_SECRET or auth_header != f"Bearer {CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        now = datetime.utcnow()
        deleted = cleanup_pending_players(db, PENDING_PLAYER_GRACE_MINUTES, now=now)
        cutoff = now - timedelta(minutes=PENDING_PLAYER_GRACE_MINUTES)
        return {
            "success": True,
            "deletedCount": len(deleted),
            "cutoff": cutoff.isoformat(),
        }
    except Exception as e:
        raise error_to_http(e)


# ===== WEBSOCKET =====

class GameConnectionManager:
    """Forward one game's ledger changes to its WebSocket clients."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, game_id: str, websocket: WebSocket) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        loop = asyncio.get_running_loop()

        # Ledger writes may happen on another thread
        def forward(event: dict):
            loop.call_soon_threadsafe(queue.put_nowait, event)

        websocket.state.subscription = db.feed.subscribe(game_id, forward)
        await websocket.accept()
        self.active_connections.setdefault(game_id, []).append(websocket)
        return queue

    def disconnect(self, game_id: str, websocket: WebSocket):
        websocket.state.subscription.unsubscribe()
        connections = self.active_connections.get(game_id, [])
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            self.active_connections.pop(game_id, None)


manager = GameConnectionManager()


@app.websocket("/ws/games/{game_id}")
async def game_websocket(websocket: WebSocket, game_id: str):
    """Live ledger change events for one game."""
    queue = await manager.connect(game_id, websocket)

    async def forward_events():
        while True:
            event = await queue.get()
            await websocket.send_json(event)

    sender = asyncio.create_task(forward_events(), name=f"ws-sender-{game_id}")
    sender.add_done_callback(log_task_failure)
    try:
        while True:
            # Keep connection alive; client messages are ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"WebSocket for game {game_id} disconnected")
    finally:
        sender.cancel()
        manager.disconnect(game_id, websocket)


# ===== MAIN =====

if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 50)
    logger.info("Poker Escrow API Starting...")
    logger.info("=" * 50)

    uvicorn.run(app, host="0.0.0.0", port=8000)
