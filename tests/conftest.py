"""Shared fixtures: an in-memory remote document store behind httpx.MockTransport."""

import json

import httpx
import pytest

from timeline_comments.core.session import SessionContext
from timeline_comments.core.settings import Settings
from timeline_comments.core.storage import DB, connect
from timeline_comments.providers.credentials import Actor
from timeline_comments.providers.remote_store import RemoteStoreClient

REMOTE_URL = "https://rtdb.test"
IDENTITY_URL = "https://identity.test/v1"


class FakeRemoteStore:
    """Hierarchical JSON tree answering ``/{path}.json`` like the real store.

    Also answers the anonymous sign-up endpoint on the identity host.
    """

    def __init__(self):
        self.data = {}
        self.requests = []
        self.failures = {}
        self.signups = 0
        self._next_id = 0

    # ---------- tree helpers ----------

    def get(self, path):
        node = self.data
        for part in [p for p in path.split("/") if p]:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def set(self, path, value):
        parts = [p for p in path.split("/") if p]
        node = self.data
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = value

    def requests_for(self, method, path=None):
        return [
            r for r in self.requests
            if r.method == method and (path is None or self._path(r) == path)
        ]

    @staticmethod
    def _path(request):
        return request.url.path.removesuffix(".json").strip("/")

    # ---------- transport ----------

    def handler(self, request):
        self.requests.append(request)

        if request.url.path.endswith("accounts:signUp"):
            self.signups += 1
            return httpx.Response(
                200,
                json={"localId": f"actor-{self.signups}", "idToken": f"token-{self.signups}"},
            )

        path = self._path(request)
        status = self.failures.get((request.method, path))
        if status:
            return httpx.Response(status, json={"error": "failure"})

        if request.method == "GET":
            return httpx.Response(200, content=json.dumps(self.get(path)).encode())

        if request.method == "PUT":
            value = json.loads(request.content)
            self.set(path, value)
            return httpx.Response(200, content=request.content)

        if request.method == "POST":
            self._next_id += 1
            child_id = f"-id{self._next_id:04d}"
            self.set(f"{path}/{child_id}", json.loads(request.content))
            return httpx.Response(200, json={"name": child_id})

        if request.method == "DELETE":
            self.set(path, None)
            return httpx.Response(200, content=b"null")

        return httpx.Response(405)


@pytest.fixture
def fake_remote():
    return FakeRemoteStore()


@pytest.fixture
def transport(fake_remote):
    return httpx.MockTransport(fake_remote.handler)


@pytest.fixture
def settings():
    return Settings(
        app_env="test",
        db_path=":memory:",
        remote_database_url=REMOTE_URL,
        identity_api_key="test-key",
        identity_base_url=IDENTITY_URL,
        remote_timeout=5.0,
        navigation_interval=10.0,
        resolve_interval=0.01,
        resolve_max_attempts=3,
        poll_interval=10.0,
        rate_limits={"comment": (10, 60000), "like": (30, 60000), "reply": (20, 60000)},
    )


@pytest.fixture
def db():
    database = DB(conn=connect(":memory:"))
    database.init()
    return database


@pytest.fixture
def remote(transport):
    return RemoteStoreClient(REMOTE_URL, transport=transport, base_delay=0)


@pytest.fixture
def session(settings):
    return SessionContext(actor=Actor(id="actor-1", token="token-1"), settings=settings)
