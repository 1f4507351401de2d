"""Shared fixtures and fakes for the Bot Builder tests."""
import json
from collections import defaultdict, deque
from typing import Any, Dict, List

import pytest

from diagnostics import RequestTrace
from http_retry import HttpResponse

SERVER_UUID = "1a7ce997-259b-452e-8b4e-cecc464142ca"
PANEL_KEY = "ptla_" + "a" * 43
CLIENT_KEY = "ptlc_" + "b" * 43


def json_response(status: int, data: Any = None, reason: str = "") -> HttpResponse:
    return HttpResponse(status=status, text=json.dumps(data) if data is not None else "",
                        reason=reason, content_type="application/json")


def html_response(status: int, body: str) -> HttpResponse:
    return HttpResponse(status=status, text=body, content_type="text/html")


def server_attributes(installed: Any = 1, **extra) -> Dict[str, Any]:
    attributes = {"uuid": SERVER_UUID, "identifier": SERVER_UUID[:8], "id": 42, "name": "my-bot",
                  "container": {"installed": installed}}
    attributes.update(extra)
    return {"object": "server", "attributes": attributes}


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeSleep:
    """Records requested delays; optionally advances a FakeClock."""

    def __init__(self, clock: FakeClock = None):
        self.calls: List[float] = []
        self.clock = clock

    async def __call__(self, delay: float):
        self.calls.append(delay)
        if self.clock:
            self.clock.now += delay


class StubPanel:
    """PanelClient stand-in returning queued responses per method."""

    def __init__(self):
        self.responses: Dict[str, deque] = defaultdict(deque)
        self.calls: List[tuple] = []

    def queue(self, method: str, *responses):
        self.responses[method].extend(responses)

    async def _next(self, method: str, *args):
        self.calls.append((method,) + args)
        item = self.responses[method].popleft() if len(self.responses[method]) > 1 \
            else self.responses[method][0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(*args)
        return item

    async def create_server(self, name, description, owner_account_id, trace=None):
        return await self._next("create_server", name, description, owner_account_id)

    async def get_server_resources(self, server_id, trace=None):
        return await self._next("get_server_resources", server_id)

    async def delete_server(self, server_id, trace=None):
        return await self._next("delete_server", server_id)

    async def find_users_by_email(self, email, trace=None):
        return await self._next("find_users_by_email", email)

    async def create_user(self, payload, trace=None):
        return await self._next("create_user", payload)

    async def write_file(self, server_id, path, content, trace=None):
        return await self._next("write_file", server_id, path, content)

    async def get_client_resources(self, server_id, trace=None):
        return await self._next("get_client_resources", server_id)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


@pytest.fixture
def trace():
    return RequestTrace(source="test", secrets=[PANEL_KEY, CLIENT_KEY])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def panel():
    return StubPanel()
