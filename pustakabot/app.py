from __future__ import annotations

import asyncio
import logging
import os
import secrets
import sqlite3
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .abuse_guard import AbuseGuard, GuardLimits
from .analytics import AnalyticsLog
from .catalog import MySQLCatalog
from .config import Settings, load_settings
from .dialogue import DialogueEngine
from .fallback import LLMFallback
from .gemini_client import GeminiClient
from .models import AddKeyRequest, AdminResult, DeleteKeyRequest, ProcessMessageRequest, ProcessMessageResponse
from .notifier import GatewayNotifier
from .replies import reply_payload
from .response_store import KeyExistsError, ResponseStore, ResponseTableError, UnknownCategoryError
from .session_store import DEFAULT_TIMEOUT_MESSAGE, SessionStore
from .static_resolver import StaticResolver
from .utils import mask_sender

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("pustakabot").setLevel(log_level)
logger = logging.getLogger("pustakabot.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


@dataclass
class Services:
    """Process-scoped collaborators shared by every request."""
    settings: Settings
    store: ResponseStore
    sessions: SessionStore
    engine: DialogueEngine
    analytics: Optional[AnalyticsLog] = None
    notifier: Optional[GatewayNotifier] = None


def build_services(settings: Settings) -> Services:
    """Purpose: Wire the production collaborators from Settings.
    Inputs/Outputs: Input is Settings; output is a Services bundle.
    Side Effects / State: Loads the response table, opens the analytics file,
        configures the Gemini SDK, and creates the gateway HTTP client.
    Dependencies: Every pustakabot component.
    Failure Modes: Analytics file errors propagate and stop startup.
    If Removed: The module-level app has nothing to serve.
    Testing Notes: Tests build Services by hand with in-memory fakes instead.
    """
    store = ResponseStore(settings.responses_path, backup_dir=settings.backup_dir)
    notifier = GatewayNotifier(settings.gateway_url)
    sessions = SessionStore(
        timeout_sec=settings.session_timeout_sec,
        notifier=notifier,
        timeout_message=lambda: store.flow_message("session_timeout", DEFAULT_TIMEOUT_MESSAGE),
    )
    guard = AbuseGuard(
        GuardLimits(
            cooldown_sec=settings.spam_cooldown_sec,
            window_sec=settings.rate_window_sec,
            max_messages=settings.rate_max_messages,
            ban_duration_sec=settings.ban_duration_sec,
            max_chars=settings.max_message_chars,
        )
    )
    resolver = StaticResolver(store)
    fallback = LLMFallback(
        completer=GeminiClient(settings),
        resolver=resolver,
        store=store,
        prompt_path=settings.prompts_dir / "fallback_system.md",
        max_attempts=settings.llm_max_attempts,
        max_tokens=settings.llm_max_tokens,
        temperature=settings.llm_temperature,
    )
    engine = DialogueEngine(
        store=store,
        sessions=sessions,
        guard=guard,
        catalog=MySQLCatalog.from_settings(settings),
        fallback=fallback,
        resolver=resolver,
        book_search_mode=settings.book_search_mode,
        result_limit=settings.result_limit,
    )
    return Services(
        settings=settings,
        store=store,
        sessions=sessions,
        engine=engine,
        analytics=AnalyticsLog(settings.analytics_db_path),
        notifier=notifier,
    )


def create_app(services: Services, run_sweeper: bool = True) -> FastAPI:
    """Purpose: Build the FastAPI app around an already-wired Services bundle.
    Inputs/Outputs: Inputs are Services and whether to run the idle sweep; output
        is the FastAPI application.
    Side Effects / State: The lifespan starts the sweep task and closes the
        gateway client on shutdown.
    Dependencies: FastAPI, HTTPBasic, DialogueEngine, ResponseStore, AnalyticsLog.
    Failure Modes: Route-level errors map to 4xx/5xx responses.
    If Removed: Gateways have no endpoint to relay messages to.
    Testing Notes: Use TestClient(create_app(services, run_sweeper=False)).
    """
    settings = services.settings
    security = HTTPBasic(auto_error=False)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        sweeper: Optional[asyncio.Task] = None
        if run_sweeper:
            sweeper = asyncio.create_task(
                services.sessions.run_sweeper(
                    settings.sweep_interval_sec,
                    housekeeping=services.engine.guard.prune,
                )
            )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with suppress(asyncio.CancelledError):
                    await sweeper
            if services.notifier is not None:
                await services.notifier.aclose()

    app = FastAPI(title="PustakaBot Core Service", lifespan=lifespan)
    app.state.services = services

    def require_admin(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> str:
        if not settings.admin_user or not settings.admin_pass:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin access is not configured")
        valid = credentials is not None and (
            secrets.compare_digest(credentials.username.encode("utf-8"), settings.admin_user.encode("utf-8"))
            & secrets.compare_digest(credentials.password.encode("utf-8"), settings.admin_pass.encode("utf-8"))
        )
        if not valid:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @app.post(
        "/process-message",
        response_model=ProcessMessageResponse,
        response_model_exclude_none=True,
    )
    async def process_message(request: ProcessMessageRequest) -> ProcessMessageResponse:
        """Purpose: Answer one inbound message relayed by a gateway.
        Inputs/Outputs: Input is {from, text, userName?}; output is {reply} or {}
            when the message is dropped silently.
        Side Effects / State: Appends an analytics row and mutates guard/session state.
        Dependencies: Uses AnalyticsLog.record and DialogueEngine.handle.
        Failure Modes: Analytics errors are logged and ignored; anything raised by
            the engine becomes a 500.
        If Removed: The bot stops answering.
        Testing Notes: A first message returns a two-item reply list.
        """
        if services.analytics is not None:
            try:
                await asyncio.to_thread(services.analytics.record, request.sender)
            except sqlite3.Error as exc:
                logger.warning("analytics record failed sender=%s error=%s", mask_sender(request.sender), exc)
        try:
            reply = await services.engine.handle(request.sender, request.text, request.user_name)
        except Exception:
            logger.exception("process-message failed sender=%s", mask_sender(request.sender))
            raise HTTPException(status_code=500, detail="Internal Server Error")
        return ProcessMessageResponse(reply=reply_payload(reply))

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "sessions": len(services.sessions)}

    @app.get("/admin/data")
    def get_data(_user: str = Depends(require_admin)) -> Dict[str, Any]:
        """Return the current response table."""
        return services.store.snapshot()

    @app.post("/admin/data/save", response_model=AdminResult)
    def save_data(data: Dict[str, Any] = Body(...), _user: str = Depends(require_admin)) -> AdminResult:
        """Purpose: Replace the whole response table.
        Inputs/Outputs: Input is the full table JSON; output is AdminResult.
        Side Effects / State: Backs up the current file, writes, reloads the cache.
        Dependencies: Uses ResponseStore.save.
        Failure Modes: 400 when required categories are missing.
        If Removed: Bulk edits need a restart and hand-edited JSON.
        Testing Notes: Saving without flow_messages returns 400 and leaves the file.
        """
        try:
            services.store.save(data)
        except ResponseTableError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        logger.info("response table saved")
        return AdminResult(success=True, message="Data berhasil disimpan")

    @app.post("/admin/data/add-key", response_model=AdminResult)
    def add_key(request: AddKeyRequest, _user: str = Depends(require_admin)) -> AdminResult:
        """Purpose: Add one keyword reply to a category.
        Inputs/Outputs: Input is {category, key, value}; output is AdminResult.
        Side Effects / State: Backs up, writes, and reloads the table.
        Dependencies: Uses ResponseStore.add_key.
        Failure Modes: 400 missing fields, 404 unknown category, 409 existing key.
        If Removed: Librarians cannot teach the bot a new keyword.
        Testing Notes: The next inbound message sees the new key.
        """
        if not request.category or not request.key or not request.value:
            raise HTTPException(status_code=400, detail="category, key and value are required")
        try:
            stored_key = services.store.add_key(request.category, request.key, request.value)
        except UnknownCategoryError:
            raise HTTPException(status_code=404, detail=f"Unknown category: {request.category}")
        except KeyExistsError as exc:
            raise HTTPException(status_code=409, detail=f"Key already exists: {exc}")
        logger.info("keyword added category=%s key=%s", request.category, stored_key)
        return AdminResult(success=True, message=f"Key '{stored_key}' ditambahkan")

    @app.post("/admin/data/delete-key", response_model=AdminResult)
    def delete_key(request: DeleteKeyRequest, _user: str = Depends(require_admin)) -> AdminResult:
        if not request.category or not request.key:
            raise HTTPException(status_code=400, detail="category and key are required")
        try:
            services.store.delete_key(request.category, request.key)
        except KeyError:
            raise HTTPException(status_code=404, detail="Key not found")
        logger.info("keyword deleted category=%s key=%s", request.category, request.key)
        return AdminResult(success=True, message=f"Key '{request.key}' dihapus")

    @app.get("/admin/stats/summary")
    def stats_summary(_user: str = Depends(require_admin)) -> Dict[str, Any]:
        if services.analytics is None:
            raise HTTPException(status_code=503, detail="Analytics log is not configured")
        try:
            return services.analytics.summary()
        except sqlite3.Error:
            logger.exception("stats query failed")
            raise HTTPException(status_code=500, detail="Server Error")

    return app


app = create_app(build_services(load_settings()))
