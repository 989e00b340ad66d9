import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from ordersync.services.errors import ChannelAuthError
from ordersync.utils.pubsub import ChannelHandle, ChannelHub

logger = logging.getLogger("ordersync.subscriptions")

# (event name, payload)
EventHandler = Callable[[str, Any], Any]


class _Subscription:
    def __init__(self, handle: ChannelHandle):
        self.handle = handle
        self.listeners: List[Tuple[str, Callable]] = []


class SubscriptionManager:
    """Keeps a view subscribed to exactly the channels of its current identity.

    On every identity change the old channels are torn down first (this
    manager's event listeners stopped, then the channel left once nobody
    else listens on it) and only then are the new ones joined, so two
    identities never deliver into the same view.
    """

    def __init__(self, hub: Optional[ChannelHub], events: Iterable[str], handler: EventHandler,
                 private: bool = False):
        self._hub = hub
        self._events = tuple(events)
        self._handler = handler
        self._private = private
        self._channels: Dict[str, Optional[_Subscription]] = {}

    @property
    def channels(self) -> Tuple[str, ...]:
        return tuple(self._channels)

    @property
    def live(self) -> bool:
        """True when every current channel has a working subscription."""
        return bool(self._channels) and all(s is not None for s in self._channels.values())

    def set_identity(self, channel_names: Union[str, Iterable[str], None]) -> None:
        if channel_names is None:
            names: Tuple[str, ...] = ()
        elif isinstance(channel_names, str):
            names = (channel_names,)
        else:
            names = tuple(dict.fromkeys(n for n in channel_names if n))
        if names == tuple(self._channels):
            return

        for name in list(self._channels):
            self._teardown(name)

        for name in names:
            self._channels[name] = self._join(name)

    def close(self) -> None:
        self.set_identity(None)

    def _teardown(self, name: str) -> None:
        sub = self._channels.pop(name, None)
        if sub is None:
            return
        for event, callback in sub.listeners:
            sub.handle.stop_listening(event, callback)
        if sub.handle.listener_count() == 0:
            self._hub.leave(name)
        logger.debug(f"Unsubscribed from {name}")

    def _join(self, name: str) -> Optional[_Subscription]:
        if self._hub is None or not self._hub.initialized:
            logger.info(f"Realtime not available; {name} will rely on polling")
            return None
        try:
            handle = self._hub.subscribe(name, private=self._private)
        except ChannelAuthError as e:
            logger.warning(f"Subscription to {name} refused: {e}")
            return None
        sub = _Subscription(handle)
        for event in self._events:
            callback = self._wrap(event)
            handle.listen(event, callback)
            sub.listeners.append((event, callback))
        logger.debug(f"Subscribed to {name} for {', '.join(self._events)}")
        return sub

    def _wrap(self, event: str) -> Callable[[Any], None]:
        def deliver(payload):
            try:
                self._handler(event, payload)
            except Exception as e:
                logger.warning(f"Handler for {event} failed: {e}")
        return deliver
