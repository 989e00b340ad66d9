from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from starlette.responses import StreamingResponse
from typing import Any, Optional
import json
import asyncio
import logging

from ordersync.utils.pubsub import ChannelHub
from ordersync.views.base import kitchen_channel
from ordersync.views.kitchen import KitchenBoard, TIME_FILTERS

router = APIRouter(prefix="/kitchen", tags=["Kitchen"])
logger = logging.getLogger("ordersync.routes.kitchen")


class PublishRequest(BaseModel):
    event: str
    data: Any = None
    # defaults to the kitchen feed of the configured restaurant
    channel: Optional[str] = None


def _hub(request) -> ChannelHub:
    return request.app.state.ctx.hub


def _board(request) -> KitchenBoard:
    board = getattr(request.app.state, "board", None)
    if board is None:
        raise HTTPException(status_code=503, detail="kitchen board not running")
    return board


def _json_default(value):
    # Decimal / datetime inside raw event payloads
    return str(value)


async def event_generator(request: Request, hub: ChannelHub):
    q = hub.register_queue()
    try:
        while True:
            # if client disconnected, stop
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(q.get(), timeout=15)
            except asyncio.TimeoutError:
                # keep-alive comment so proxies don't drop the stream
                yield ": ping\n\n"
                continue
            except asyncio.CancelledError:
                break
            yield f"event: {event['event']}\ndata: {json.dumps(event, default=_json_default)}\n\n"
    finally:
        hub.unregister_queue(q)


@router.get("/board")
def board(request: Request, time_filter: str = "all"):
    kds = _board(request)
    if time_filter not in TIME_FILTERS:
        raise HTTPException(status_code=422, detail=f"time_filter must be one of {', '.join(TIME_FILTERS)}")
    kds.time_filter = time_filter
    snap = kds.snapshot
    return {
        "time_filter": time_filter,
        "live": kds.subscriptions.live,
        "active": kds.active_count(),
        "columns": {
            status: [o.model_dump(mode="json") for o in orders]
            for status, orders in kds.columns().items()
        },
        "revision": snap.revision,
    }


@router.get("/stream")
def stream(request: Request):
    # plain StreamingResponse with text/event-stream; no extra SSE dependency
    return StreamingResponse(event_generator(request, _hub(request)), media_type="text/event-stream")


@router.websocket('/ws')
async def websocket_endpoint(websocket: WebSocket):
    hub = websocket.app.state.ctx.hub
    await websocket.accept()
    hub.register_ws(websocket)
    try:
        # keep the connection open; anything the client sends is ignored
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister_ws(websocket)


@router.get('/status')
def status(request: Request):
    data = _hub(request).get_status()
    board = getattr(request.app.state, "board", None)
    if board is not None:
        data["board"] = {
            "live": board.subscriptions.live,
            "polling": board.poller.running,
            "ticks": board.poller.ticks,
            "skipped": board.poller.skipped,
            "failures": board.poller.failures,
            "held_events": board.store.held_events,
        }
    return data


@router.post('/test-publish')
async def test_publish(payload: PublishRequest, request: Request):
    """Development helper: publish an event on the in-process hub."""
    ctx = request.app.state.ctx
    channel = payload.channel or kitchen_channel(ctx.settings.RESTAURANT_ID)
    delivered = await ctx.hub.publish(channel, payload.event, payload.data)
    logger.debug(f"test-publish {channel}/{payload.event} -> {delivered} listener(s)")
    return {"ok": True, "channel": channel, "delivered": delivered}
