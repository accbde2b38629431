import os
import time
from types import SimpleNamespace

import pytest
import requests
from requests.structures import CaseInsensitiveDict

os.environ.setdefault("LINK_ARCHIVER_SKIP_FIRESTORE_INIT", "1")

from app.models.chat import Channel, Post, Team  # noqa: E402
from app.services.chat_client import ChatAPIError  # noqa: E402


class FakeResponse:
    def __init__(
        self,
        status_code=200,
        body=b"",
        headers=None,
        url="https://example.com",
        encoding="utf-8",
    ):
        self.status_code = status_code
        self.body = body
        self.headers = CaseInsensitiveDict(headers or {})
        self.url = url
        self.encoding = encoding
        self.apparent_encoding = "utf-8"
        self.closed = False
        self.payload = None

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start : start + chunk_size]

    def json(self):
        if self.payload is None:
            raise ValueError("no JSON body")
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class DrippingResponse(FakeResponse):
    """Sends one byte every ``interval`` seconds and counts what it has sent."""

    def __init__(self, body=b"", interval=0.05, **kwargs):
        super().__init__(body=body, **kwargs)
        self.interval = interval
        self.sent = 0

    def iter_content(self, chunk_size=1):
        for index in range(len(self.body)):
            time.sleep(self.interval)
            self.sent += 1
            yield self.body[index : index + 1]


class FakeSession:
    """Serves canned responses keyed by ``(METHOD, url)``."""

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.headers = {}

    def add(self, method, url, response):
        self.routes.setdefault((method.upper(), url), []).append(response)
        return self

    def request(self, method, url, **kwargs):
        method = method.upper()
        self.calls.append(SimpleNamespace(method=method, url=url, kwargs=kwargs))
        queue = self.routes.get((method, url))
        if not queue:
            raise requests.ConnectionError(f"no route for {method} {url}")
        response = queue[0] if len(queue) == 1 else queue.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response()
        return response

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def head(self, url, **kwargs):
        return self.request("HEAD", url, **kwargs)

    def methods_for(self, url):
        return [call.method for call in self.calls if call.url == url]


class FakeChat:
    def __init__(self):
        self.posts = {}
        self.channels = {}
        self.teams = {}
        self.created = []
        self.fail_create = False
        self.bot_user_id = "bot-user"

    def add_post(self, post_id, channel_id="channel-1", root_id="", user_id="user-1"):
        self.posts[post_id] = Post(
            id=post_id, channel_id=channel_id, root_id=root_id, user_id=user_id
        )
        self.channels.setdefault(channel_id, Channel(id=channel_id, team_id="team-1"))
        self.teams.setdefault("team-1", Team(id="team-1", name="engineering"))
        return self.posts[post_id]

    def get_post(self, post_id):
        try:
            return self.posts[post_id]
        except KeyError:
            raise ChatAPIError(f"GET /posts/{post_id} returned status 404", 404)

    def get_channel(self, channel_id):
        try:
            return self.channels[channel_id]
        except KeyError:
            raise ChatAPIError(f"GET /channels/{channel_id} returned status 404", 404)

    def get_team(self, team_id):
        try:
            return self.teams[team_id]
        except KeyError:
            raise ChatAPIError(f"GET /teams/{team_id} returned status 404", 404)

    def create_post(self, post):
        if self.fail_create:
            raise ChatAPIError("POST /posts returned status 500", 500)
        self.created.append(post)
        return Post(id=f"reply-{len(self.created)}", channel_id=post.channel_id)


@pytest.fixture()
def http():
    return FakeSession()


@pytest.fixture()
def make_response():
    return FakeResponse


@pytest.fixture()
def make_dripping_response():
    return DrippingResponse


@pytest.fixture()
def chat():
    fake = FakeChat()
    fake.add_post("post-1")
    fake.add_post("post-2")
    return fake


@pytest.fixture()
def app(tmp_path, chat):
    from app import create_app
    from app.config import AppSettings
    from app.services.kvstore import MemoryKVStore
    from app.services.storage import LocalObjectStore

    app_settings = AppSettings(
        _env_file=None,
        ADMIN_USER_IDS="admin-1",
        RULES_CACHE_SECONDS=0,
        ARCHIVE_CONCURRENCY=2,
    )
    app = create_app(
        app_settings,
        kv=MemoryKVStore(),
        objects=LocalObjectStore(tmp_path / "archives"),
        chat=chat,
    )
    app.config.update(TESTING=True)
    yield app
    app.extensions["link_archiver"].processor.shutdown(wait=True)


@pytest.fixture()
def client(app):
    return app.test_client()
