import json
from decimal import Decimal

import pytest
import requests

from ordersync.core.context import AppContext, token_authorizer
from ordersync.schemas.order import Order, ProductRef
from ordersync.services.api_client import ResourceClient
from ordersync.utils.pubsub import ChannelHub

BASE_URL = "http://api.test"


def item_payload(item_id, product_id, status="pending", quantity=1, notes=None, price="5.00"):
    return {
        "id": item_id,
        "product": {"id": product_id, "name": f"Product {product_id}", "price": price},
        "quantity": quantity,
        "unit_price": price,
        "notes": notes,
        "status": status,
    }


def order_payload(order_id, status="pending", items=(), total="10.00", **extra):
    data = {
        "id": order_id,
        "status": status,
        "payment_status": "unpaid",
        "subtotal": total,
        "total": total,
        "items": list(items),
    }
    data.update(extra)
    return data


def make_order(order_id, status="pending", items=(), **extra) -> Order:
    return Order.model_validate(order_payload(order_id, status, items, **extra))


def product(product_id, price="5.00") -> ProductRef:
    return ProductRef(id=product_id, name=f"Product {product_id}", price=Decimal(price))


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.content = b"" if payload is None else json.dumps(payload).encode()

    def json(self):
        return json.loads(self.content)

    @property
    def text(self):
        return self.content.decode()


class FakeApi:
    """Stand-in for ``requests.Session.request``: canned answers per (method, path)."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method, path, payload=None, status=200):
        self.routes[(method.upper(), path)] = (status, payload)
        return self

    def calls_to(self, method, path):
        return [c for c in self.calls if c["method"] == method.upper() and c["path"] == path]

    def __call__(self, method, url, data=None, params=None, headers=None, timeout=None, **kwargs):
        path = url[len(BASE_URL):] if url.startswith(BASE_URL) else url
        self.calls.append({
            "method": method.upper(),
            "path": path,
            "body": json.loads(data) if data else None,
            "params": params,
            "headers": headers or {},
        })
        answer = self.routes.get((method.upper(), path))
        if answer is None:
            return FakeResponse(404, {"message": "not found"})
        status, payload = answer
        if isinstance(payload, Exception):
            raise payload
        if callable(payload):
            status, payload = payload()
        return FakeResponse(status, payload)


@pytest.fixture
def api(monkeypatch):
    fake = FakeApi()
    monkeypatch.setattr(requests.Session, "request", fake)
    return fake


@pytest.fixture
def ctx(api):
    client = ResourceClient(BASE_URL, token="test-token", timeout=2)
    hub = ChannelHub(authorizer=token_authorizer, token="test-token")
    return AppContext(client=client, hub=hub)
