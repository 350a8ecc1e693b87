import json
import os
import logging
from pathlib import Path
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from minereplay.game_engine import ConfigError, PlacementError
from minereplay.persistence import InMemoryPersistence, FirestorePersistence
from minereplay.replay import ReplayMismatchError, ReplaySession, replay_game
from minereplay.session import GameSession

load_dotenv(dotenv_path=Path('.env.local'))

API_BASE = "/api/minesweeper"

logger = logging.getLogger("uvicorn.error")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def choose_persistence():
    if _env_flag("USE_INMEMORY", "0"):
        return InMemoryPersistence()
    try:
        # honours FIRESTORE_EMULATOR_HOST when set
        return FirestorePersistence()
    except Exception as e:
        logger.warning(f"[minesweeper] Firestore unavailable, falling back to memory error={e}")
        return InMemoryPersistence()


def replay_delay_seconds(delay_ms: Optional[int]) -> float:
    if delay_ms is None:
        delay_ms = int(os.getenv("REPLAY_STEP_DELAY_MS", "500"))
    return max(delay_ms, 0) / 1000.0


class StartBody(BaseModel):
    size: int = Field(..., ge=2, le=40)
    mines_count: int = Field(..., ge=1)
    player_label: Optional[str] = Field(None, max_length=64)


class CellBody(BaseModel):
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)


def create_app(persistence=None) -> FastAPI:
    app = FastAPI(title="Minesweeper Replay Service", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    app.state.persistence = persistence or choose_persistence()
    app.state.sessions = {}

    @app.on_event("startup")
    async def _log_persistence():
        klass = app.state.persistence.__class__.__name__
        emulator = os.getenv("FIRESTORE_EMULATOR_HOST")
        project = os.getenv("GOOGLE_CLOUD_PROJECT")
        logger.info(
            f"[minesweeper] Persistence={klass} USE_INMEMORY={int(_env_flag('USE_INMEMORY', '0'))} "
            f"FIRESTORE_EMULATOR_HOST={emulator or '-'} GOOGLE_CLOUD_PROJECT={project or '-'}"
        )

    def get_user_id(req: Request) -> str:
        # Detect Cloud Run to set safer defaults in production
        is_cloud_run = bool(os.getenv("K_SERVICE") or os.getenv("K_REVISION") or os.getenv("K_CONFIGURATION"))
        trust_x_user_id = _env_flag("TRUST_X_USER_ID", "0" if is_cloud_run else "1")
        allow_anon = _env_flag("ALLOW_ANON", "0" if is_cloud_run else "1")

        def _resolved(via: str, user_id: str) -> str:
            logger.info(
                f"[minesweeper] get_user_id via={via} user_id={user_id} "
                f"is_cloud_run={int(is_cloud_run)} trust_x_user_id={int(trust_x_user_id)} allow_anon={int(allow_anon)}"
            )
            return user_id

        # 1) Google/IAP style headers (production)
        iap_email = (
            req.headers.get("X-Goog-Authenticated-User-Email")
            or req.headers.get("X-Authenticated-User-Email")
            or req.headers.get("X-Forwarded-Email")
        )
        if iap_email:
            # Format often: "accounts.google.com:email@example.com"
            return _resolved("iap_email", iap_email.split(":", 1)[-1])
        forwarded_user = req.headers.get("X-Forwarded-User")
        if forwarded_user:
            return _resolved("forwarded_user", forwarded_user)

        # 2) Explicit header only in dev or if enabled
        uid = req.headers.get("X-User-Id")
        if uid and trust_x_user_id:
            return _resolved("x-user-id", uid)

        # 3) Dev fallback
        if allow_anon:
            return _resolved("anon-fallback", os.getenv("DEFAULT_USER_ID", "local-user"))

        logger.warning(
            f"[minesweeper] get_user_id missing user id is_cloud_run={int(is_cloud_run)} "
            f"trust_x_user_id={int(trust_x_user_id)} allow_anon={int(allow_anon)}"
        )
        raise HTTPException(status_code=401, detail="missing user id")

    def get_session(user_id: str) -> GameSession:
        session = app.state.sessions.get(user_id)
        if session is None:
            raise HTTPException(status_code=404, detail="no game")
        return session

    def load_record(game_id: str):
        record = app.state.persistence.get_game_record(game_id)
        if record is None:
            raise HTTPException(status_code=404, detail="game not found")
        return record

    def schedule_save(session: GameSession, background_tasks: BackgroundTasks, user_id: str) -> None:
        if session.needs_save:
            logger.info(f"[minesweeper] game finished user_id={user_id} status={session.status}")
            background_tasks.add_task(session.save, app.state.persistence)

    def session_view(session: GameSession, user_id: str) -> dict:
        return session.to_client() | {"user_id": user_id}

    @app.post(f"{API_BASE}/start")
    def start_game(body: StartBody, user_id: str = Depends(get_user_id)):
        existing = app.state.sessions.get(user_id)
        if existing is not None and not existing.finished:
            raise HTTPException(status_code=409, detail="active game exists")
        try:
            session = GameSession(body.player_label or user_id, body.size, body.mines_count)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        app.state.sessions[user_id] = session
        return session_view(session, user_id)

    @app.get(f"{API_BASE}/state")
    def get_state(user_id: str = Depends(get_user_id)):
        return session_view(get_session(user_id), user_id)

    @app.post(f"{API_BASE}/reveal")
    def reveal(body: CellBody, background_tasks: BackgroundTasks, user_id: str = Depends(get_user_id)):
        session = get_session(user_id)
        try:
            result = session.reveal(body.x, body.y)
        except PlacementError as e:
            logger.warning(f"[minesweeper] mine placement failed user_id={user_id} reason={e}")
            raise HTTPException(status_code=400, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        schedule_save(session, background_tasks, user_id)
        return session_view(session, user_id) | result.to_dict()

    @app.post(f"{API_BASE}/flag")
    def flag(body: CellBody, user_id: str = Depends(get_user_id)):
        session = get_session(user_id)
        try:
            toggled = session.toggle_flag(body.x, body.y)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return session_view(session, user_id) | {"toggled": toggled}

    @app.post(f"{API_BASE}/abandon")
    def abandon(background_tasks: BackgroundTasks, user_id: str = Depends(get_user_id)):
        session = get_session(user_id)
        session.abandon()
        schedule_save(session, background_tasks, user_id)
        return session_view(session, user_id)

    @app.get(f"{API_BASE}/games")
    def list_games():
        return {"games": app.state.persistence.list_game_records()}

    @app.get(f"{API_BASE}/games/{{game_id}}")
    def get_game(game_id: str):
        record = load_record(game_id)
        return record.to_dict() | {"game_id": game_id}

    @app.get(f"{API_BASE}/games/{{game_id}}/replay")
    def replay(game_id: str):
        record = load_record(game_id)
        session = ReplaySession(record)
        steps = []
        try:
            while not session.done:
                steps.append(session.step().to_dict())
            session.verify_final_result()
        except ReplayMismatchError as e:
            logger.warning(f"[minesweeper] replay mismatch game_id={game_id} reason={e.code}")
            raise HTTPException(status_code=409, detail=e.code)
        engine = session.engine
        return {
            "game_id": game_id,
            "player_label": record.player_label,
            "size": record.size,
            "mines_count": record.mines_count,
            "final_result": record.final_result,
            "status": engine.status,
            "board": engine.to_client_view(),
            "steps": steps,
        }

    @app.get(f"{API_BASE}/games/{{game_id}}/replay/stream")
    async def replay_stream(game_id: str, delay_ms: Optional[int] = Query(None, ge=0, le=10000)):
        record = load_record(game_id)
        # reject corrupt records before any line is streamed
        try:
            replay_game(record)
        except ReplayMismatchError as e:
            logger.warning(f"[minesweeper] replay mismatch game_id={game_id} reason={e.code}")
            raise HTTPException(status_code=409, detail=e.code)
        delay = replay_delay_seconds(delay_ms)

        async def _lines():
            session = ReplaySession(record)
            async for step in session.paced(delay):
                yield json.dumps(step.to_dict()) + "\n"
            yield json.dumps({"done": True, "status": session.engine.status}) + "\n"

        return StreamingResponse(_lines(), media_type="application/x-ndjson")

    # Static frontend
    frontend_dir = Path(__file__).resolve().parent.parent / "frontend"
    if frontend_dir.exists():
        app.mount("/", StaticFiles(directory=str(frontend_dir), html=True), name="frontend")

    return app


app = create_app()
