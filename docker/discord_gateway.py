#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
discord_gateway.py — Realtime gateway session for tw-autoredeem

The connection bookkeeping (hello, identify/resume, heartbeat acks and
reconnect backoff) lives in GatewaySession, which never touches a socket and
can be driven with synthetic frames. GatewayClient runs it over a websocket.
"""

import asyncio
import json
import logging
import platform
import random
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"

# GUILD_MESSAGES | DIRECT_MESSAGES | MESSAGE_CONTENT
DEFAULT_INTENTS = (1 << 9) | (1 << 12) | (1 << 15)

# -------------------------------
# Protocol Constants
# -------------------------------

class Opcode(IntEnum):
    """Gateway opcodes used by this client"""
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    RESUME = 6
    RECONNECT = 7
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


CLOSE_CODES = {
    4000: "Unknown error",
    4001: "Unknown opcode",
    4002: "Decode error",
    4003: "Not authenticated",
    4004: "Authentication failed",
    4005: "Already authenticated",
    4007: "Invalid sequence",
    4008: "Rate limited",
    4009: "Session timed out",
    4010: "Invalid shard",
    4011: "Sharding required",
    4012: "Invalid API version",
    4013: "Invalid intent(s)",
    4014: "Disallowed intent(s)",
}

# Reconnecting after these only repeats the same failure
FATAL_CLOSE_CODES = {4004, 4010, 4011, 4012, 4013, 4014}

# The session can not be resumed after these
SESSION_RESET_CLOSE_CODES = {4007, 4009}


class GatewayError(Exception):
    """Raised for protocol violations and unrecoverable gateway failures"""

    def __init__(self, message: str, fatal: bool = False):
        super().__init__(message)
        self.fatal = fatal


class GatewayState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_HELLO = "awaiting_hello"
    IDENTIFYING = "identifying"
    RESUMING = "resuming"
    READY = "ready"
    DEGRADED = "degraded"
    BACKOFF = "backoff"
    STOPPED = "stopped"


_S = GatewayState
_LIVE = {_S.AWAITING_HELLO, _S.IDENTIFYING, _S.RESUMING, _S.READY, _S.DEGRADED}

TRANSITIONS: Dict[GatewayState, Set[GatewayState]] = {
    _S.DISCONNECTED: {_S.CONNECTING, _S.STOPPED},
    _S.CONNECTING: {_S.AWAITING_HELLO, _S.BACKOFF, _S.STOPPED},
    _S.AWAITING_HELLO: {_S.IDENTIFYING, _S.RESUMING, _S.BACKOFF, _S.STOPPED},
    _S.IDENTIFYING: {_S.READY, _S.DEGRADED, _S.BACKOFF, _S.STOPPED},
    _S.RESUMING: {_S.READY, _S.DEGRADED, _S.BACKOFF, _S.STOPPED},
    _S.READY: {_S.DEGRADED, _S.BACKOFF, _S.STOPPED},
    _S.DEGRADED: {_S.BACKOFF, _S.STOPPED},
    _S.BACKOFF: {_S.CONNECTING, _S.STOPPED},
    _S.STOPPED: set(),
}

# -------------------------------
# Actions
# -------------------------------

@dataclass(frozen=True)
class Send:
    """Write a frame, optionally after a delay in seconds"""
    payload: Dict[str, Any]
    delay: float = 0.0


@dataclass(frozen=True)
class StartHeartbeat:
    interval: float


@dataclass(frozen=True)
class Reconnect:
    reason: str


@dataclass(frozen=True)
class Emit:
    event: str
    data: Any = None


Action = Any

# -------------------------------
# Reconnect Policy
# -------------------------------

@dataclass
class ReconnectPolicy:
    """
    Linear backoff capped at max_delay.

    With max_attempts > 0 the session gives up once the budget is spent.
    With max_attempts == 0 it retries forever, switching to the long
    cooldown after cooldown_after consecutive failures.
    """
    base_delay: float = 5.0
    max_delay: float = 30.0
    max_attempts: int = 10
    cooldown: float = 300.0
    cooldown_after: int = 10

    def delay(self, attempt: int) -> Optional[float]:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        if self.max_attempts and attempt > self.max_attempts:
            return None
        if not self.max_attempts and attempt > self.cooldown_after:
            return max(self.max_delay, self.cooldown)
        return min(self.base_delay * attempt, self.max_delay)

# -------------------------------
# Session State Machine
# -------------------------------

class GatewaySession:
    """Socket-free gateway state machine fed with decoded frames"""

    def __init__(self, token: str, intents: int = DEFAULT_INTENTS,
                 policy: ReconnectPolicy = None,
                 identify_jitter: Tuple[float, float] = (0.5, 3.0)):
        self.token = token
        self.intents = intents
        self.policy = policy or ReconnectPolicy()
        self.identify_jitter = identify_jitter

        self.state = GatewayState.DISCONNECTED
        self.session_id: Optional[str] = None
        self.sequence: Optional[int] = None
        self.resume_url: Optional[str] = None
        self.user: Dict[str, Any] = {}
        self.heartbeat_interval: Optional[float] = None
        self.attempts = 0
        self.stop_reason: Optional[str] = None
        self._ack_received = True

    @property
    def can_resume(self) -> bool:
        return self.session_id is not None and self.sequence is not None

    def _transition(self, new_state: GatewayState):
        if new_state not in TRANSITIONS[self.state]:
            raise GatewayError(f"Illegal gateway transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Gateway state {self.state.value} -> {new_state.value}")
        self.state = new_state

    def clear_session(self):
        self.session_id = None
        self.sequence = None
        self.resume_url = None

    # Payloads

    def identify_payload(self) -> Dict[str, Any]:
        return {
            "op": Opcode.IDENTIFY,
            "d": {
                "token": self.token,
                "intents": self.intents,
                "properties": {
                    "os": platform.system().lower() or "linux",
                    "browser": "tw-autoredeem",
                    "device": "tw-autoredeem",
                },
                "presence": {
                    "status": "online",
                    "since": 0,
                    "activities": [],
                    "afk": False,
                },
            },
        }

    def resume_payload(self) -> Dict[str, Any]:
        return {
            "op": Opcode.RESUME,
            "d": {
                "token": self.token,
                "session_id": self.session_id,
                "seq": self.sequence,
            },
        }

    def heartbeat_payload(self) -> Dict[str, Any]:
        return {"op": Opcode.HEARTBEAT, "d": self.sequence}

    # Connection lifecycle

    def begin_connect(self):
        if self.state is GatewayState.STOPPED:
            raise GatewayError(f"Gateway stopped: {self.stop_reason}", fatal=True)
        self._transition(GatewayState.CONNECTING)

    def connection_opened(self):
        self._transition(GatewayState.AWAITING_HELLO)

    def connection_closed(self, code: Optional[int] = None):
        """Record a dropped socket; session data survives unless the close code forbids it"""
        if self.state is GatewayState.STOPPED:
            return
        if code in FATAL_CLOSE_CODES:
            self.clear_session()
            self.stop(f"{code} {CLOSE_CODES.get(code, 'Unknown')}")
            return
        if code in SESSION_RESET_CLOSE_CODES:
            self.clear_session()
        self._transition(GatewayState.BACKOFF)

    def next_backoff(self) -> Optional[float]:
        """Delay before the next connection attempt, or None to give up"""
        if self.state is GatewayState.STOPPED:
            return None
        self.attempts += 1
        delay = self.policy.delay(self.attempts)
        if delay is None:
            self.stop(f"gave up after {self.attempts - 1} reconnect attempts")
        return delay

    def stop(self, reason: str):
        self.stop_reason = reason
        if self.state is not GatewayState.STOPPED:
            self._transition(GatewayState.STOPPED)

    # Heartbeats

    def heartbeat_due(self) -> Action:
        if self.state not in _LIVE:
            return Reconnect("heartbeat while not connected")
        if not self._ack_received:
            if self.state is not GatewayState.DEGRADED:
                self._transition(GatewayState.DEGRADED)
            return Reconnect("heartbeat ack missed")
        self._ack_received = False
        return Send(self.heartbeat_payload())

    # Frames

    def handle_frame(self, frame: Dict[str, Any]) -> List[Action]:
        """Apply one decoded frame; a malformed frame raises GatewayError"""
        if not isinstance(frame, dict):
            raise GatewayError(f"Malformed gateway frame: {frame!r:.100}")
        try:
            return self._handle_frame(frame)
        except (AttributeError, TypeError, KeyError) as e:
            raise GatewayError(f"Malformed gateway frame (op {frame.get('op')}): {e!r}") from e

    def _handle_frame(self, frame: Dict[str, Any]) -> List[Action]:
        op = frame.get("op")
        data = frame.get("d")
        seq = frame.get("s")

        if seq is not None:
            self.sequence = seq

        if op == Opcode.HELLO:
            return self._on_hello(data or {})
        if op == Opcode.DISPATCH:
            return self._on_dispatch(frame.get("t"), data)
        if op == Opcode.HEARTBEAT_ACK:
            self._ack_received = True
            return []
        if op == Opcode.HEARTBEAT:
            return [Send(self.heartbeat_payload())]
        if op == Opcode.RECONNECT:
            return [Reconnect("server requested reconnect")]
        if op == Opcode.INVALID_SESSION:
            if not data:
                self.clear_session()
            return [Reconnect("invalid session" + (" (resumable)" if data else ""))]

        logger.debug(f"Ignoring gateway opcode {op}")
        return []

    def _on_hello(self, data: Dict[str, Any]) -> List[Action]:
        if self.state is not GatewayState.AWAITING_HELLO:
            raise GatewayError(f"Unexpected HELLO in state {self.state.value}")

        self.heartbeat_interval = float(data["heartbeat_interval"]) / 1000
        self._ack_received = True
        actions: List[Action] = [StartHeartbeat(self.heartbeat_interval)]

        if self.can_resume:
            self._transition(GatewayState.RESUMING)
            actions.append(Send(self.resume_payload()))
        else:
            self._transition(GatewayState.IDENTIFYING)
            actions.append(Send(self.identify_payload(), delay=random.uniform(*self.identify_jitter)))
        return actions

    def _on_dispatch(self, event: Optional[str], data: Any) -> List[Action]:
        if event == "READY":
            self.session_id = data.get("session_id")
            self.resume_url = data.get("resume_gateway_url")
            self.user = data.get("user") or {}
            self._mark_ready()
        elif event == "RESUMED":
            self._mark_ready()
        return [Emit(event, data)] if event else []

    def _mark_ready(self):
        if self.state in (GatewayState.IDENTIFYING, GatewayState.RESUMING):
            self._transition(GatewayState.READY)
        self.attempts = 0

# -------------------------------
# Websocket Client
# -------------------------------

Handler = Callable[[Any], Awaitable[None]]


class GatewayClient:
    """Runs a GatewaySession over a websocket and routes dispatch events to handlers"""

    def __init__(self, token: str, intents: int = DEFAULT_INTENTS,
                 url: str = DEFAULT_GATEWAY_URL, policy: ReconnectPolicy = None,
                 session: GatewaySession = None, connect=None):
        self.url = url
        self.session = session or GatewaySession(token, intents=intents, policy=policy)
        self._connect = connect or websockets.connect
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._ws = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._socket_tasks: Set[asyncio.Task] = set()
        self._closing = False

    def on(self, event: str):
        """Register an async handler for a dispatch event name such as MESSAGE_CREATE"""
        def decorator(func: Handler) -> Handler:
            self._handlers[event].append(func)
            return func
        return decorator

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user.get("id")

    async def run(self):
        """Connect, and keep reconnecting until closed or the session gives up"""
        while not self._closing:
            self.session.begin_connect()
            url = self.session.resume_url if self.session.can_resume and self.session.resume_url else self.url
            if "?" not in url:
                url = url.rstrip("/") + "/?v=10&encoding=json"
            close_code = None

            try:
                async with self._connect(url, max_size=None, ping_interval=None, close_timeout=10) as ws:
                    self._ws = ws
                    self.session.connection_opened()
                    logger.info("Connected to gateway")
                    close_code = await self._read_loop(ws)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.error(f"Gateway connection error: {e}")
            except GatewayError as e:
                logger.error(f"Gateway protocol error: {e}")
            finally:
                self._ws = None
                await self._cancel_background()

            if self._closing:
                break

            reason = CLOSE_CODES.get(close_code, "No reason") if close_code else "No reason"
            logger.warning(f"Disconnected: {close_code} - {reason}")
            self.session.connection_closed(close_code)

            delay = self.session.next_backoff()
            if delay is None:
                logger.error(f"Gateway stopped: {self.session.stop_reason}")
                break

            attempts = self.session.policy.max_attempts or "inf"
            logger.warning(f"Reconnecting in {delay:.0f}s (attempt {self.session.attempts}/{attempts})...")
            await asyncio.sleep(delay)

    async def close(self):
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    async def _read_loop(self, ws) -> Optional[int]:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except ValueError as e:
                    logger.error(f"Gateway frame decode error: {e}")
                    continue
                if not isinstance(frame, dict):
                    logger.error(f"Gateway frame is not an object: {raw!r:.100}")
                    continue

                for action in self.session.handle_frame(frame):
                    if not await self._perform(ws, action):
                        await ws.close(code=4000, reason="reconnect")
                        return None
        except ConnectionClosed as e:
            return e.rcvd.code if e.rcvd else None
        return ws.close_code

    async def _perform(self, ws, action: Action) -> bool:
        """Carry out one action; False means the connection should be dropped"""
        if isinstance(action, Send):
            if action.delay > 0:
                self._spawn(self._send_later(ws, action.payload, action.delay), socket_bound=True)
            else:
                await self._send(ws, action.payload)
        elif isinstance(action, StartHeartbeat):
            if self._heartbeat_task:
                self._heartbeat_task.cancel()
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws, action.interval))
        elif isinstance(action, Reconnect):
            logger.warning(f"Reconnecting: {action.reason}")
            return False
        elif isinstance(action, Emit):
            self._dispatch(action.event, action.data)
        return True

    async def _send(self, ws, payload: Dict[str, Any]):
        await ws.send(json.dumps(payload))

    async def _send_later(self, ws, payload: Dict[str, Any], delay: float):
        await asyncio.sleep(delay)
        await self._send(ws, payload)

    async def _heartbeat_loop(self, ws, interval: float):
        await asyncio.sleep(interval * random.random())
        while True:
            action = self.session.heartbeat_due()
            if isinstance(action, Reconnect):
                logger.warning(f"{action.reason}, reconnecting...")
                await ws.close(code=4000, reason="heartbeat timeout")
                return
            try:
                await self._send(ws, action.payload)
            except ConnectionClosed:
                return
            await asyncio.sleep(interval)

    def _dispatch(self, event: str, data: Any):
        for handler in self._handlers.get(event, ()):
            self._spawn(handler(data))

    def _spawn(self, coro, socket_bound: bool = False) -> asyncio.Task:
        """Track a task; socket-bound tasks are cancelled when the connection drops"""
        task = asyncio.create_task(coro)
        tasks = self._socket_tasks if socket_bound else self._background
        tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._background.discard(task)
        self._socket_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Gateway task error: {task.exception()!r}")

    async def wait_handlers(self):
        """Wait for in-flight event handlers to finish"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _cancel_background(self):
        tasks = [t for t in self._socket_tasks if not t.done()]
        if self._heartbeat_task:
            tasks.append(self._heartbeat_task)
            self._heartbeat_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
