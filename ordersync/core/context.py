import logging
from typing import Optional

from ordersync.core.config import Settings, settings as default_settings
from ordersync.services import resources
from ordersync.services.api_client import ResourceClient
from ordersync.services.errors import ApiError
from ordersync.utils.pubsub import ChannelHub

logger = logging.getLogger("ordersync.context")


def token_authorizer(channel: str, token: Optional[str]) -> bool:
    # private channels need an authenticated client
    return bool(token)


class AppContext:
    """Explicit dependencies for the views: HTTP client, channel hub, currency.

    Built once, initialized with ``await ctx.init()`` before any view starts
    and torn down with ``await ctx.close()``.
    """

    def __init__(self, config: Settings = None, client: ResourceClient = None, hub: ChannelHub = None):
        self.settings = config or default_settings
        self.client = client or ResourceClient(
            self.settings.API_BASE_URL,
            token=self.settings.API_TOKEN,
            timeout=self.settings.HTTP_TIMEOUT,
        )
        self.hub = hub or ChannelHub(
            authorizer=token_authorizer,
            token=self.settings.API_TOKEN or None,
            initialized=self.settings.REALTIME_ENABLED,
        )
        self.currency = self.settings.DEFAULT_CURRENCY
        self.restaurant: dict = {}
        self.ready = False

    async def init(self) -> "AppContext":
        try:
            self.restaurant = await resources.fetch_restaurant(self.client)
        except ApiError as e:
            logger.warning(f"Could not load restaurant settings, using defaults: {e}")
        else:
            self.currency = self.restaurant.get("currency") or self.settings.DEFAULT_CURRENCY
        self.ready = True
        logger.info(f"Context ready (currency={self.currency}, realtime={self.hub.initialized})")
        return self

    async def close(self) -> None:
        self.ready = False
        self.client.close()
