"""FastAPI application exposing prompt turns, history commands and events."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import Settings, load_config
from .errors import HistoryReadError, HistoryWriteError, StreamConnectionError, TurnPersistError, TurnSetupError
from .events import EventBroadcaster, format_sse
from .history import HistoryStore
from .orchestrator import PromptOrchestrator, SessionOpener

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class PromptRequest(BaseModel):
    markdown: str = Field(..., min_length=1, description="Prompt text sent as the user message.")
    low_cost: bool = Field(default=False, description="Use the economy model.")


class PromptResponse(BaseModel):
    response: str


class CancelResponse(BaseModel):
    cancelled: bool


# -----------------------------
# Utilities
# -----------------------------
def _make_store(settings: Settings) -> HistoryStore:
    return HistoryStore(
        settings.history_path,
        settings.system_prompt,
        max_length=settings.max_history_length,
    )


def _turn_error_status(err: TurnSetupError) -> int:
    # Provider unreachable / key rejected is an upstream failure.
    return 502 if isinstance(err.__cause__, StreamConnectionError) else 500


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    store: Optional[HistoryStore] = None,
    open_session: Optional[SessionOpener] = None,
    credential_source: Optional[Callable[[], str]] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    settings = settings or Settings.from_config(cfg)

    # Services
    store = store or _make_store(settings)
    events = EventBroadcaster()
    orchestrator = PromptOrchestrator(
        store,
        settings,
        lock=asyncio.Lock(),
        sink=events,
        credential_source=credential_source,
        open_session=open_session,
    )

    app = FastAPI(title="Coding Assistant", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.events = events
    app.state.orchestrator = orchestrator

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "state": orchestrator.state.value,
            "busy": orchestrator.busy,
            "history_path": str(store.path),
            "subscribers": events.subscribers,
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        return JSONResponse(cfg)

    @app.post("/prompt", response_model=PromptResponse)
    async def prompt(req: PromptRequest) -> PromptResponse:
        try:
            text = await orchestrator.run_turn(req.markdown, req.low_cost)
        except TurnSetupError as e:
            logger.warning("turn failed before streaming: %s", e)
            raise HTTPException(status_code=_turn_error_status(e), detail=str(e))
        except TurnPersistError as e:
            logger.error("turn reply not saved: %s", e)
            raise HTTPException(status_code=500, detail=str(e))
        return PromptResponse(response=text)

    @app.post("/cancel", response_model=CancelResponse)
    def cancel() -> CancelResponse:
        return CancelResponse(cancelled=orchestrator.cancel_stream())

    @app.get("/history")
    def get_history() -> JSONResponse:
        try:
            conv = store.load_or_new()
        except HistoryReadError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return JSONResponse(conv.model_dump(mode="json"))

    @app.post("/history/clear")
    async def clear_history() -> JSONResponse:
        # Wait for any running turn so its save cannot resurrect the old file.
        async with orchestrator.lock:
            try:
                conv = store.clear()
            except HistoryWriteError as e:
                raise HTTPException(status_code=500, detail=str(e))
        return JSONResponse(conv.model_dump(mode="json"))

    @app.get("/events")
    async def stream_events() -> StreamingResponse:
        q = events.subscribe()

        async def frames() -> AsyncIterator[str]:
            async for ev in events.listen(q):
                yield format_sse(ev)

        return StreamingResponse(frames(), media_type="text/event-stream")

    return app
