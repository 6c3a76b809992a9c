"""
Unit tests for blast/channel.py

The HTTP round-trip (_post) is mocked; these tests cover how gateway
responses map onto send results.
"""

import asyncio
import os
import sys
import unittest
from unittest.mock import AsyncMock

import aiohttp

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _channel(**kwargs):
    from blast.channel import WebhookChannel

    defaults = {"api_url": "https://gateway.test/send", "api_token": "tok", "status_url": ""}
    defaults.update(kwargs)
    return WebhookChannel(**defaults)


class TestWebhookSend(unittest.TestCase):

    def test_success_returns_message_id(self):
        channel = _channel()
        channel._post = AsyncMock(return_value=(200, {"message_id": "wamid.1"}, {}))

        result = run_async(channel.send("+628111", "Hello"))

        self.assertTrue(result["success"])
        self.assertEqual(result["message_id"], "wamid.1")
        payload = channel._post.call_args[0][0]
        self.assertEqual(payload, {"to": "+628111", "text": "Hello"})

    def test_twilio_style_sid_accepted(self):
        channel = _channel()
        channel._post = AsyncMock(return_value=(201, {"sid": "SM123"}, {}))

        self.assertEqual(run_async(channel.send("+628111", "Hello"))["message_id"], "SM123")

    def test_template_is_forwarded(self):
        from blast.channel import build_template

        channel = _channel()
        channel._post = AsyncMock(return_value=(200, {"id": "x"}, {}))
        template = build_template("HX123", "Ana", "Hello")

        run_async(channel.send("+628111", "Hello", template))

        payload = channel._post.call_args[0][0]
        self.assertEqual(payload["template"], {"id": "HX123", "variables": {"1": "Ana", "2": "Hello"}})

    def test_rate_limited_uses_retry_after_header(self):
        channel = _channel()
        channel._post = AsyncMock(return_value=(429, {}, {"Retry-After": "30"}))

        result = run_async(channel.send("+628111", "Hello"))

        self.assertFalse(result["success"])
        self.assertTrue(result["rate_limited"])
        self.assertEqual(result["retry_after"], 30)

    def test_rate_limited_default_retry_after(self):
        from blast.channel import DEFAULT_RETRY_AFTER_SECONDS

        channel = _channel()
        channel._post = AsyncMock(return_value=(429, {}, {}))

        result = run_async(channel.send("+628111", "Hello"))
        self.assertEqual(result["retry_after"], DEFAULT_RETRY_AFTER_SECONDS)

    def test_gateway_error_is_failure(self):
        channel = _channel()
        channel._post = AsyncMock(return_value=(400, {"error": "Number not on WhatsApp"}, {}))

        result = run_async(channel.send("+628111", "Hello"))

        self.assertFalse(result["success"])
        self.assertFalse(result["rate_limited"])
        self.assertIn("400", result["error"])
        self.assertIn("Number not on WhatsApp", result["error"])

    def test_timeout_is_failure(self):
        channel = _channel()
        channel._post = AsyncMock(side_effect=asyncio.TimeoutError())

        result = run_async(channel.send("+628111", "Hello"))
        self.assertFalse(result["success"])
        self.assertIn("timed out", result["error"])

    def test_connection_error_is_failure(self):
        channel = _channel()
        channel._post = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        result = run_async(channel.send("+628111", "Hello"))
        self.assertFalse(result["success"])
        self.assertIn("connection error", result["error"])

    def test_unconfigured_url_is_failure(self):
        channel = _channel(api_url="")
        channel._post = AsyncMock()

        result = run_async(channel.send("+628111", "Hello"))

        self.assertFalse(result["success"])
        channel._post.assert_not_called()

    def test_auth_header(self):
        self.assertEqual(_channel()._headers()["Authorization"], "Bearer tok")
        self.assertNotIn("Authorization", _channel(api_token="")._headers())


class TestWebhookReady(unittest.TestCase):

    def test_configured_without_status_url_is_ready(self):
        self.assertTrue(run_async(_channel().is_ready()))

    def test_unconfigured_is_not_ready(self):
        self.assertFalse(run_async(_channel(api_url="").is_ready()))


class TestDryRunChannel(unittest.TestCase):

    def test_records_and_succeeds(self):
        from blast.channel import DryRunChannel

        channel = DryRunChannel()
        result = run_async(channel.send("+628111", "Hello"))

        self.assertTrue(result["success"])
        self.assertTrue(result["message_id"].startswith("dry-"))
        self.assertEqual(channel.sent[0]["destination"], "+628111")


class TestBuildTemplate(unittest.TestCase):

    def test_no_template_id(self):
        from blast.channel import build_template

        self.assertIsNone(build_template(None, "Ana", "Hello"))
        self.assertIsNone(build_template("", "Ana", "Hello"))


if __name__ == "__main__":
    unittest.main()
