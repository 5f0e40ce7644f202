"""
Notification channel for agent questions.

When an agent asks the user something, the pipeline pauses and the
question is pushed to a Telegram chat so an operator can answer and resume.

All methods are fail-safe: an unconfigured or unreachable channel never
blocks the pipeline.
"""

import logging
from typing import List, Optional

import httpx

from flightpath_config import NotifyConfig
from flightpath_models import UserQuestion, UserInputRequest

logger = logging.getLogger(__name__)


def format_questions(questions: List[UserQuestion], pipeline_id: Optional[str] = None) -> str:
    lines = ["❓ *Agent needs input*"]
    if pipeline_id:
        lines.append(f"Pipeline: `{pipeline_id}`")
    for q in questions:
        lines.append("")
        lines.append(f"*{q.header}*: {q.question}")
        for i, option in enumerate(q.options, 1):
            lines.append(f"  {i}. {option}")
    return "\n".join(lines)


def format_input_request(request: UserInputRequest, pipeline_id: Optional[str] = None) -> str:
    lines = [f"📝 *{request.header}*"]
    if pipeline_id:
        lines.append(f"Pipeline: `{pipeline_id}`")
    if request.description:
        lines.append(request.description)
    for f in request.fields:
        label = f.get("label") or f.get("name") or "field"
        lines.append(f"  - {label}")
    return "\n".join(lines)


class TelegramNotifier:
    """
    Usage:
        notifier = TelegramNotifier(config.notify)
        await notifier.send_questions(questions, pipeline_id)
    """

    def __init__(self, config: NotifyConfig, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def send_message(self, text: str) -> bool:
        if not self.enabled:
            logger.debug("Telegram not configured, skipping notification")
            return False
        url = f"{self.config.telegram_api_url.rstrip('/')}/bot{self.config.telegram_bot_token}/sendMessage"
        payload = {"chat_id": self.config.telegram_chat_id, "text": text, "parse_mode": "Markdown"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ Telegram notification failed: {e}")
            return False

    async def send_questions(self, questions: List[UserQuestion], pipeline_id: Optional[str] = None) -> bool:
        return await self.send_message(format_questions(questions, pipeline_id))

    async def send_input_request(self, request: UserInputRequest, pipeline_id: Optional[str] = None) -> bool:
        return await self.send_message(format_input_request(request, pipeline_id))
