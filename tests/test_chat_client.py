import pytest

from app.config import ChatConfig
from app.models.chat import NewPost
from app.services.chat_client import ChatAPIError, ChatClient

BASE = "https://chat.test/api/v4"


def json_response(make_response, payload, status_code=200):
    response = make_response(status_code=status_code)
    response.payload = payload
    return response


@pytest.fixture()
def chat_client(http):
    config = ChatConfig(api_url="https://chat.test/", bot_token="secret", bot_user_id="bot-1")
    return ChatClient(config, session=http, timeout=1)


def test_sets_bearer_token(chat_client, http):
    assert http.headers["Authorization"] == "Bearer secret"


def test_get_post(chat_client, http, make_response):
    http.add(
        "GET",
        f"{BASE}/posts/p1",
        json_response(make_response, {"id": "p1", "channel_id": "c1", "root_id": "r1"}),
    )
    post = chat_client.get_post("p1")
    assert post.channel_id == "c1"
    assert post.thread_root_id == "r1"


def test_channel_lookups_are_cached(chat_client, http, make_response):
    http.add("GET", f"{BASE}/channels/c1", json_response(make_response, {"id": "c1", "team_id": "t1"}))
    assert chat_client.get_channel("c1").team_id == "t1"
    assert chat_client.get_channel("c1").team_id == "t1"
    assert http.methods_for(f"{BASE}/channels/c1") == ["GET"]


def test_create_post_sends_bot_user(chat_client, http, make_response):
    http.add("POST", f"{BASE}/posts", json_response(make_response, {"id": "new", "channel_id": "c1"}))
    created = chat_client.create_post(
        NewPost(channel_id="c1", message="hi", root_id="r1", file_ids=["f1"])
    )
    assert created.id == "new"
    assert http.calls[-1].kwargs["json"] == {
        "channel_id": "c1",
        "message": "hi",
        "root_id": "r1",
        "file_ids": ["f1"],
        "user_id": "bot-1",
    }


def test_error_status_raises(chat_client, http, make_response):
    http.add("GET", f"{BASE}/teams/t1", json_response(make_response, {}, status_code=403))
    with pytest.raises(ChatAPIError) as excinfo:
        chat_client.get_team("t1")
    assert excinfo.value.status_code == 403


def test_transport_error_raises(chat_client):
    with pytest.raises(ChatAPIError):
        chat_client.get_post("unrouted")
