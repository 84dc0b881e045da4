"""
HTTP API for the Skyboard aggregator.

Endpoints:
- GET /health: liveness and store counters
- GET /board/{did}/{rkey}: raw records plus materialized tasks
- WebSocket /ws?boardUri=...: one "update" message per coalesced change

Invariants:
    - Board reads never mutate state except through backfill on a miss
    - A websocket client receives at most one pending update per board;
      it re-fetches the board over HTTP after each message
    - Response keys are camelCase, matching the record wire format

How to change safely:
    - Keep handlers thin; board folding lives in the shared sdk
    - Add new endpoints to the router, not to create_app()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from sdk.skyboard_sdk.uris import BOARD, build_uri

from .._version import __version__
from ..apply.aggregator_store import AggregatorStore
from ..backfill.backfiller import Backfiller
from ..config import HttpConfig
from ..notify.subscriptions import BoardNotifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Skyboard"])


def _store(request: Request) -> AggregatorStore:
    return request.app.state.store


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    stats = await _store(request).get_stats()
    notifier: BoardNotifier = request.app.state.notifier
    return {
        "status": "ok",
        "service": "skyboard-appview",
        "version": __version__,
        "records": stats,
        "subscribers": notifier.subscriber_count(),
    }


@router.get("/board/{did}/{rkey}")
async def get_board(
    request: Request,
    did: str,
    rkey: str,
    viewer: str | None = Query(None, description="DID whose own edits count as privileged"),
) -> dict[str, Any]:
    """Board records with materialized tasks."""
    store = _store(request)
    board_uri = build_uri(did, BOARD, rkey)

    view = await store.board_view(board_uri, viewer=viewer)
    if view is None:
        backfiller: Backfiller | None = request.app.state.backfiller
        if backfiller is not None and await backfiller.backfill_board(did, rkey):
            view = await store.board_view(board_uri, viewer=viewer)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Board {board_uri} not found")
    return view.to_dict()


@router.websocket("/ws")
async def board_updates(websocket: WebSocket, board_uri: str = Query(..., alias="boardUri")) -> None:
    notifier: BoardNotifier = websocket.app.state.notifier
    await websocket.accept()
    subscription = notifier.subscribe(board_uri)
    logger.debug(f"Websocket subscribed to {board_uri}")
    try:
        while True:
            changed = await subscription.next_change()
            if changed is None:
                break
            await websocket.send_json({"type": "update", "boardUri": changed})
    except WebSocketDisconnect:
        logger.debug(f"Websocket for {board_uri} disconnected")
    finally:
        subscription.close()


def create_app(
    store: AggregatorStore,
    notifier: BoardNotifier,
    backfiller: Backfiller | None = None,
    config: HttpConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Initialized or uninitialized aggregator store
        notifier: Notifier shared with the ingester
        backfiller: Used to fetch boards on a read miss
        config: HTTP configuration (CORS origins)
    """
    config = config or HttpConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await store.initialize()
        yield

    app = FastAPI(
        title="Skyboard AppView",
        description="Aggregated, materialized kanban boards with change notifications.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.notifier = notifier
    app.state.backfiller = backfiller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app
