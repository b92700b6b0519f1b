import json
from typing import Any, Dict, List, Optional

import pytest

from deposco_ops._deposco_client import DeposcoClient, DeposcoCredentials


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        if text is None:
            text = body if isinstance(body, str) else json.dumps(body)
        self.text = text

    def json(self):
        return json.loads(self.text)


class FakeSession:
    """
    Stand-in for requests.Session.

    `routes` maps a sku (GET) or "reserve" (POST) to a FakeResponse or to an
    exception instance that is raised instead.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []
        self.auth = None
        self.closed = False

    def close(self):
        self.closed = True

    def _answer(self, key: str) -> FakeResponse:
        answer = self.routes[key]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"method": "GET", "url": url, "params": params, "headers": headers})
        sku = params["itemNumber"] if params else url.rstrip("/").split("/")[-2]
        return self._answer(sku)

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"method": "POST", "url": url, "json": json, "headers": headers})
        return self._answer("reserve")


def atp(sku: str, qty: Any) -> FakeResponse:
    return FakeResponse(200, [{"itemNumber": sku, "totalAvailableToPromise": qty}])


@pytest.fixture
def credentials():
    return DeposcoCredentials(site_code="acme", site_prefix="acme-prod", username="bot", password="s3cret")


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def client(credentials, session):
    return DeposcoClient(credentials, session=session)


@pytest.fixture
def agent_options():
    return {
        "site_code": "acme",
        "site_prefix": "acme-prod",
        "username": "bot",
        "password": "s3cret",
        "business_unit": "ACME",
        "skus": "SKU-1,SKU-2",
    }
