"""Slack chat channel: inbound commands via Socket Mode, results back to the thread.

Direct messages and app mentions are fed into ``CourierContext.handle_message``;
the channel also registers itself as the ``chat`` sender so finished jobs are
posted back to the conversation they came from.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

try:
    from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
    from slack_bolt.async_app import AsyncApp
    from slack_sdk.web.async_client import AsyncWebClient

    HAS_SLACK = True
except ImportError:
    HAS_SLACK = False

from courier.schema import SOURCE_CHAT

if TYPE_CHECKING:
    from courier.context import CourierContext
    from courier.job_queue import Job

logger = logging.getLogger(__name__)

SLACK_MESSAGE_LIMIT = 3900


def _require_slack():
    if not HAS_SLACK:
        raise ImportError(
            "slack-bolt and slack-sdk are required for the Slack channel. "
            "Install with: pip install 'courier[slack]' or pip install slack-bolt slack-sdk"
        )


def strip_mention(text: str) -> str:
    """Drop a leading ``<@U123>`` bot mention."""
    text = (text or "").strip()
    if text.startswith("<@"):
        _, _, rest = text.partition(">")
        return rest.strip()
    return text


def chunk_message(text: str, limit: int = SLACK_MESSAGE_LIMIT) -> list[str]:
    if not text:
        return []
    return [text[i : i + limit] for i in range(0, len(text), limit)]


class SlackChannel:
    """Slack app using Socket Mode (no public URL needed)."""

    def __init__(self, context: CourierContext, bot_token: str, app_token: str):
        _require_slack()
        self.context = context
        self._app_token = app_token
        self._app = AsyncApp(token=bot_token)
        self._client = AsyncWebClient(token=bot_token)
        self._handler: AsyncSocketModeHandler | None = None
        self._pending: set[asyncio.Task] = set()

        self._register_events()
        context.router.register(SOURCE_CHAT, self.send_result)

    def _register_events(self):
        @self._app.event("app_mention")
        async def handle_mention(event, say):
            self._dispatch(event, say, strip_mention(event.get("text", "")))

        @self._app.event("message")
        async def handle_message(event, say):
            # Direct conversations only; ignore bot and system messages.
            if event.get("channel_type") not in {"im", "mpim"}:
                return
            if event.get("bot_id") or event.get("subtype"):
                return
            self._dispatch(event, say, (event.get("text") or "").strip())

    def _dispatch(self, event: dict, say, text: str) -> None:
        if not text:
            return
        task = asyncio.create_task(self.handle_text(event.get("channel"), text, say))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def handle_text(self, channel_id: str | None, text: str, say) -> None:
        try:
            result = await self.context.handle_message(text, channel_id=channel_id, source=SOURCE_CHAT)
            reply = self.context.reply_for(result)
        except Exception as e:
            logger.exception("Slack message handling failed")
            reply = f"Error: {e}"
        if reply:
            await say(reply)

    async def send_result(self, job: Job, message: str) -> None:
        if not job.channel_id:
            logger.warning(f"Job {job.id} has no Slack channel; result not posted")
            return
        for part in chunk_message(message):
            await self._client.chat_postMessage(channel=job.channel_id, text=part)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Connect in Socket Mode and return once connected."""
        self._handler = AsyncSocketModeHandler(self._app, self._app_token)
        await self._handler.connect_async()
        logger.info("Slack channel connected in Socket Mode")

    async def stop(self) -> None:
        self.context.router.unregister(SOURCE_CHAT)
        if self._handler:
            await self._handler.close_async()
            logger.info("Slack channel stopped")
