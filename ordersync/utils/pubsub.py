import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from starlette.websockets import WebSocket

from ordersync.services.errors import ChannelAuthError

logger = logging.getLogger("ordersync.pubsub")

Listener = Callable[[Any], Any]
# (channel_name, token) -> allowed
Authorizer = Callable[[str, Optional[str]], bool]


class ChannelHandle:
    """A joined channel. Listeners are keyed by event name."""

    def __init__(self, hub: "ChannelHub", name: str, private: bool):
        self.hub = hub
        self.name = name
        self.private = private
        self._listeners: Dict[str, List[Listener]] = {}

    def listen(self, event: str, callback: Listener) -> "ChannelHandle":
        self._listeners.setdefault(_event_key(event), []).append(callback)
        return self

    def stop_listening(self, event: str, callback: Optional[Listener] = None) -> None:
        """Drop every listener of ``event``, or only ``callback`` when given."""
        key = _event_key(event)
        if callback is None:
            self._listeners.pop(key, None)
            return
        remaining = [cb for cb in self._listeners.get(key, []) if cb is not callback]
        if remaining:
            self._listeners[key] = remaining
        else:
            self._listeners.pop(key, None)

    @property
    def events(self) -> List[str]:
        return sorted(self._listeners)

    def listener_count(self) -> int:
        return sum(len(v) for v in self._listeners.values())

    async def _dispatch(self, event: str, payload: Any) -> int:
        delivered = 0
        for cb in list(self._listeners.get(_event_key(event), [])):
            try:
                result = cb(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                # one failing listener must not stop delivery to the others
                logger.warning(f"Listener for {self.name}/{event} failed: {e}")
        return delivered


class ChannelHub:
    """In-process channel transport.

    Named channels carry named events to their listeners. The same envelopes
    are fanned out to SSE queues and WebSocket clients registered by the
    relay routes. Delivery is best-effort and at-least-once from the
    listener's point of view: the engine never relies on ordering.
    """

    def __init__(self, authorizer: Optional[Authorizer] = None, token: Optional[str] = None,
                 initialized: bool = True):
        self._authorizer = authorizer
        self._token = token
        self._initialized = initialized
        self._channels: Dict[str, ChannelHandle] = {}
        self._subscribers: List[asyncio.Queue] = []
        self._websockets: List[WebSocket] = []
        self.subscribe_count = 0
        self.leave_count = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    def subscribe(self, name: str, private: bool = False) -> ChannelHandle:
        if not self._initialized:
            raise RuntimeError("channel transport not initialized")
        if private and self._authorizer is not None and not self._authorizer(name, self._token):
            raise ChannelAuthError(f"not authorized for private channel {name}")
        handle = self._channels.get(name)
        if handle is None:
            handle = ChannelHandle(self, name, private)
            self._channels[name] = handle
            self.subscribe_count += 1
            logger.debug(f"joined channel {name} (private={private})")
        return handle

    def leave(self, name: str) -> None:
        if self._channels.pop(name, None) is not None:
            self.leave_count += 1
            logger.debug(f"left channel {name}")

    def channel(self, name: str) -> Optional[ChannelHandle]:
        return self._channels.get(name)

    @property
    def channels(self) -> List[str]:
        return sorted(self._channels)

    async def publish(self, channel: str, event: str, payload: Any) -> int:
        """Deliver ``event`` on ``channel``; returns the number of listener calls."""
        logger.debug(f"publish {channel}/{event}")
        delivered = 0
        handle = self._channels.get(channel)
        if handle is not None:
            delivered = await handle._dispatch(event, payload)

        envelope = {"channel": channel, "event": _event_key(event), "data": payload}
        # put the event into all subscriber queues (SSE)
        for q in list(self._subscribers):
            try:
                q.put_nowait(envelope)
            except asyncio.QueueFull:
                logger.warning("SSE queue full; dropping event")

        # broadcast to connected WebSocket clients (best-effort)
        for ws in list(self._websockets):
            try:
                await ws.send_json(envelope)
            except Exception:
                self.unregister_ws(ws)
        return delivered

    # -- relay consumers --

    def register_queue(self, maxsize: int = 0) -> asyncio.Queue:
        q = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(q)
        return q

    def unregister_queue(self, q: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass

    def register_ws(self, ws: WebSocket) -> None:
        self._websockets.append(ws)

    def unregister_ws(self, ws: WebSocket) -> None:
        try:
            self._websockets.remove(ws)
        except ValueError:
            pass

    def get_status(self) -> dict:
        """Small debug status: joined channels, SSE queues and WS clients."""
        return {
            "initialized": self._initialized,
            "channels": {name: h.events for name, h in self._channels.items()},
            "sse_queues": len(self._subscribers),
            "websockets": len(self._websockets),
        }


def _event_key(event: str) -> str:
    # ".order.created" and "order.created" name the same event
    return (event or "").strip().lstrip(".")
