"""
Channel adapters — deliver one text to one destination.

The engine only depends on the ChannelAdapter contract:

    result = await channel.send(destination, text, template=None)
    # {"success": bool, "message_id": str|None, "error": str|None,
    #  "rate_limited": bool, "retry_after": int|None}

WebhookChannel posts to an HTTP messaging gateway with aiohttp.
DryRunChannel logs instead of sending (``main.py engine --dry-run``).
"""

import asyncio
import logging
import uuid
from typing import Dict, Optional, Tuple

import aiohttp

import config

logger = logging.getLogger("blast.channel")

DEFAULT_RETRY_AFTER_SECONDS = 60


def send_result(
    success: bool,
    message_id: str = None,
    error: str = None,
    rate_limited: bool = False,
    retry_after: int = None,
) -> Dict:
    return {
        "success": success,
        "message_id": message_id,
        "error": error,
        "rate_limited": rate_limited,
        "retry_after": retry_after,
    }


class ChannelAdapter:
    """Contract for outbound delivery. Implementations must never raise from send()."""

    name = "base"

    async def send(self, destination: str, text: str, template: Optional[Dict] = None) -> Dict:
        raise NotImplementedError

    async def is_ready(self) -> bool:
        return True


class WebhookChannel(ChannelAdapter):
    """
    JSON-over-HTTP gateway (WhatsApp/Twilio bridge or similar).

    POST CHANNEL_API_URL  {"to", "text", "template"?}  ->  {"message_id"}
    A 429 response means "slow down": the send is deferred, not failed.
    """

    name = "webhook"

    def __init__(self, api_url: str = None, api_token: str = None,
                 status_url: str = None, timeout_seconds: int = None):
        self.api_url = api_url if api_url is not None else config.CHANNEL_API_URL
        self.api_token = api_token if api_token is not None else config.CHANNEL_API_TOKEN
        self.status_url = status_url if status_url is not None else config.CHANNEL_STATUS_URL
        self.timeout_seconds = timeout_seconds or config.CHANNEL_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _post(self, payload: Dict) -> Tuple[int, Dict, Dict]:
        """POST the payload. Returns (status, json_body, headers)."""
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.api_url, json=payload, headers=self._headers()) as resp:
                try:
                    body = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    body = {"raw": await resp.text()}
                return resp.status, body if isinstance(body, dict) else {"raw": body}, dict(resp.headers)

    @staticmethod
    def _retry_after(body: Dict, headers: Dict) -> int:
        for value in (headers.get("Retry-After"), body.get("retry_after")):
            try:
                if value is not None:
                    return max(int(float(value)), 1)
            except (TypeError, ValueError):
                continue
        return DEFAULT_RETRY_AFTER_SECONDS

    async def send(self, destination: str, text: str, template: Optional[Dict] = None) -> Dict:
        if not self.api_url:
            return send_result(False, error="Channel API URL not configured")

        payload = {"to": destination, "text": text}
        if template:
            payload["template"] = template

        try:
            status, body, headers = await self._post(payload)
        except asyncio.TimeoutError:
            logger.error(f"channel_send_timeout: to={destination}")
            return send_result(False, error=f"Channel send timed out after {self.timeout_seconds}s")
        except aiohttp.ClientError as e:
            logger.error(f"channel_send_error: to={destination} error={e}")
            return send_result(False, error=f"Channel connection error: {e}")

        if status == 429:
            retry_after = self._retry_after(body, headers)
            logger.warning(f"channel_rate_limited: to={destination} retry_after={retry_after}s")
            return send_result(False, error="Rate limited by channel", rate_limited=True, retry_after=retry_after)

        if 200 <= status < 300:
            message_id = body.get("message_id") or body.get("sid") or body.get("id")
            logger.info(f"channel_sent: to={destination} message_id={message_id}")
            return send_result(True, message_id=message_id)

        error = body.get("error") or body.get("message") or body.get("raw") or "unknown error"
        logger.error(f"channel_send_failed: to={destination} status={status} error={str(error)[:200]}")
        return send_result(False, error=f"Channel returned {status}: {str(error)[:200]}")

    async def is_ready(self) -> bool:
        """Gateway connectivity check. Without a status URL, configured means ready."""
        if not self.api_url:
            return False
        if not self.status_url:
            return True
        try:
            timeout = aiohttp.ClientTimeout(total=10)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.status_url, headers=self._headers()) as resp:
                    if resp.status != 200:
                        return False
                    body = await resp.json(content_type=None)
                    return bool(body.get("ready", True)) if isinstance(body, dict) else True
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"channel_status_check_failed: {e}")
            return False


class DryRunChannel(ChannelAdapter):
    """Logs each message and reports success without contacting anyone."""

    name = "dry_run"

    def __init__(self):
        self.sent = []

    async def send(self, destination: str, text: str, template: Optional[Dict] = None) -> Dict:
        message_id = f"dry-{uuid.uuid4().hex[:12]}"
        self.sent.append({"destination": destination, "text": text, "template": template})
        logger.info(f"dry_run_send: to={destination} text={text[:60]!r}")
        return send_result(True, message_id=message_id)


def build_template(template_id: Optional[str], contact_name: str, text: str) -> Optional[Dict]:
    """Template reference with {{1}} = contact name and {{2}} = the AI message."""
    if not template_id:
        return None
    return {"id": template_id, "variables": {"1": contact_name, "2": text}}
