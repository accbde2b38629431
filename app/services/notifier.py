from __future__ import annotations

import logging
from typing import Optional

from app.models.chat import NewPost
from app.services.chat_client import ChatAPIError
from app.services.exceptions import reason_for

logger = logging.getLogger(__name__)

_SIZE_UNITS = "KMGTPE"


def format_file_size(size: int) -> str:
    """Human-readable size with 1024-based units: ``1.5 KB``, ``512 B``."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {_SIZE_UNITS[exp]}B"


class ThreadNotifier:
    """Posts archive outcomes as replies in the thread of the originating post."""

    def __init__(self, chat) -> None:
        self.chat = chat

    def permalink(self, post_id: str) -> Optional[str]:
        """``/<team>/pl/<post>`` for team channels, ``/pl/<post>`` otherwise."""
        try:
            post = self.chat.get_post(post_id)
            channel = self.chat.get_channel(post.channel_id)
        except ChatAPIError as exc:
            logger.warning(
                "notifier.permalink_lookup_failed",
                extra={"post_id": post_id, "error": str(exc)},
            )
            return None
        if channel.team_id:
            try:
                team = self.chat.get_team(channel.team_id)
            except ChatAPIError:
                return f"/pl/{post_id}"
            if team.name:
                return f"/{team.name}/pl/{post_id}"
        return f"/pl/{post_id}"

    def reply_with_attachment(
        self,
        post_id: str,
        file_id: str,
        url: str,
        filename: str,
        mime_type: str,
        size: int,
        original_post_id: Optional[str] = None,
    ) -> None:
        post = self.chat.get_post(post_id)
        message = (
            f"✅ Successfully archived: {url}\n\n"
            f"**File:** {filename}\n"
            f"**Size:** {format_file_size(size)}\n"
            f"**Type:** {mime_type}"
        )
        if original_post_id and original_post_id != post_id:
            link = self.permalink(original_post_id)
            if link:
                message += f"\n\n📎 Originally archived in [this post]({link})"

        self.chat.create_post(
            NewPost(
                channel_id=post.channel_id,
                root_id=post.thread_root_id,
                message=message,
                file_ids=[file_id],
            )
        )

    def reply_with_error(self, post_id: str, url: str, error: BaseException) -> None:
        post = self.chat.get_post(post_id)
        message = (
            f"❌ Failed to archive: {url}\n\n"
            f"**Error:** {error}\n"
            f"**Reason:** {reason_for(error)}"
        )
        self.chat.create_post(
            NewPost(channel_id=post.channel_id, root_id=post.thread_root_id, message=message)
        )
