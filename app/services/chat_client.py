"""Thin REST client for the chat platform the archiver replies into."""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Optional

import requests
from cachetools import TTLCache
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from app.config import ChatConfig
from app.models.chat import Channel, NewPost, Post, Team

logger = logging.getLogger(__name__)

CHAT_TIMEOUT_SECONDS = float(os.getenv("CHAT_TIMEOUT_SECONDS", "10"))
CHAT_MAX_RETRIES = int(os.getenv("CHAT_MAX_RETRIES", "2"))
CHAT_LOOKUP_CACHE_SECONDS = float(os.getenv("CHAT_LOOKUP_CACHE_SECONDS", "300"))


class ChatAPIError(Exception):
    """The chat platform rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChatClient:
    def __init__(
        self,
        config: ChatConfig,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = CHAT_TIMEOUT_SECONDS,
    ) -> None:
        if not config.api_url:
            raise ValueError("CHAT_API_URL is required for the chat client.")
        self.base_url = config.api_url.rstrip("/") + "/api/v4"
        self.bot_user_id = config.bot_user_id
        self.timeout = timeout
        self._session = session or self._build_session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {config.bot_token}",
                "Content-Type": "application/json",
            }
        )
        self._lookup_cache: TTLCache = TTLCache(
            maxsize=1024, ttl=CHAT_LOOKUP_CACHE_SECONDS
        )
        self._cache_lock = threading.Lock()

    @staticmethod
    def _build_session() -> requests.Session:
        retry = Retry(
            total=CHAT_MAX_RETRIES,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=("GET",),
        )
        session = requests.Session()
        session.mount("https://", HTTPAdapter(max_retries=retry))
        session.mount("http://", HTTPAdapter(max_retries=retry))
        return session

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.error("chat.request_failed", extra={"path": path, "error": str(exc)})
            raise ChatAPIError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            logger.error(
                "chat.request_rejected",
                extra={"path": path, "status_code": response.status_code},
            )
            raise ChatAPIError(
                f"{method} {path} returned status {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ChatAPIError(f"{method} {path} returned invalid JSON") from exc

    def _cached(self, key: tuple[str, str], loader):
        with self._cache_lock:
            if key in self._lookup_cache:
                return self._lookup_cache[key]
        value = loader()
        with self._cache_lock:
            self._lookup_cache[key] = value
        return value

    def get_post(self, post_id: str) -> Post:
        return Post.from_dict(self._request("GET", f"/posts/{post_id}"))

    def get_channel(self, channel_id: str) -> Channel:
        return self._cached(
            ("channel", channel_id),
            lambda: Channel.from_dict(self._request("GET", f"/channels/{channel_id}")),
        )

    def get_team(self, team_id: str) -> Team:
        return self._cached(
            ("team", team_id),
            lambda: Team.from_dict(self._request("GET", f"/teams/{team_id}")),
        )

    def create_post(self, post: NewPost) -> Post:
        payload = post.to_dict()
        if self.bot_user_id:
            payload["user_id"] = self.bot_user_id
        return Post.from_dict(self._request("POST", "/posts", json=payload))
