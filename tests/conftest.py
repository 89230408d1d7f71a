"""
Pytest configuration and shared fixtures for tw-autoredeem tests.
"""

import asyncio
import json
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest

from autoredeem import (
    AppContext,
    Config,
    Notifier,
    RedeemResult,
)


def make_response(json_data=None, text: str = "", status: int = 200) -> Mock:
    """Fake requests.Response; json() raises when no JSON body is given"""
    resp = Mock()
    resp.status_code = status
    resp.text = text
    if json_data is None:
        resp.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        resp.json.return_value = json_data
    return resp


class FakeRedeemer:
    """Async redeemer returning scripted results and recording every call"""

    def __init__(self, results: Optional[Dict[str, List[RedeemResult]]] = None, amount: float = 20.0):
        self.results = results or {}
        self.amount = amount
        self.calls: List[str] = []

    async def redeem(self, voucher: str) -> RedeemResult:
        self.calls.append(voucher)
        await asyncio.sleep(0)
        scripted = self.results.get(voucher)
        if scripted:
            return scripted.pop(0)
        return RedeemResult.ok(voucher, self.amount, "Somchai")


class FakeScanner:
    """QR scanner keyed by attachment url; exceptions are raised as-is"""

    def __init__(self, payloads: Optional[Dict[str, object]] = None):
        self.payloads = payloads or {}
        self.scanned: List[str] = []

    async def scan(self, attachment):
        url = attachment.get("url")
        self.scanned.append(url)
        payload = self.payloads.get(url)
        if isinstance(payload, Exception):
            raise payload
        return payload


@pytest.fixture
def env() -> Dict[str, str]:
    return {
        "PHONE": "081-234-5678",
        "DISCORD_TOKEN": "test-token",
        "NOTIFY_USER_ID": "42",
    }


@pytest.fixture
def config(env) -> Config:
    return Config(environ=env, env_file=None)


@pytest.fixture
def redeemer() -> FakeRedeemer:
    return FakeRedeemer()


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def ctx(config, redeemer, scanner) -> AppContext:
    return AppContext(
        config=config,
        redeemer=redeemer,
        notifier=Notifier(mode="none"),
        scanner=scanner,
    )


def message(content: str = "", author_id: str = "7", bot: bool = False, attachments=None,
            channel_id: str = "100", message_id: str = "555") -> Dict:
    """Build a MESSAGE_CREATE payload"""
    return {
        "id": message_id,
        "channel_id": channel_id,
        "content": content,
        "author": {"id": author_id, "username": "someone", "bot": bot},
        "attachments": attachments or [],
    }


class FakeSocket:
    """Websocket stand-in fed with scripted frames"""

    def __init__(self, frames):
        self.incoming = asyncio.Queue()
        for frame in frames:
            self.incoming.put_nowait(json.dumps(frame))
        self.sent = []
        self.close_code = None

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self, code=1000, reason=""):
        if self.close_code is None:
            self.close_code = code
            self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()


def connector(sockets, urls):
    pending = iter(sockets)

    def connect(url, **kwargs):
        urls.append(url)
        return next(pending)

    return connect
