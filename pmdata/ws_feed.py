"""WebSocket 피드 모듈 - CLOB 마켓 채널 구독, 수신 및 재연결"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

import websockets

from pmdata.models import ConnectionState, PriceUpdateEvent
from pmdata.normalizer import is_ping, parse_ws_message

if TYPE_CHECKING:
    from pmdata.config import Config
    from pmdata.integrity_logger import IntegrityLogger

logger = logging.getLogger(__name__)


class FeedSignal(str, Enum):
    CONNECT = "connect"
    OPENED = "opened"
    FAILED = "failed"
    RETRY = "retry"
    SHUTDOWN = "shutdown"


class InvalidTransition(ValueError):
    """허용되지 않는 상태 전이"""

    def __init__(self, state: ConnectionState, signal: FeedSignal):
        super().__init__(f"invalid transition: {state.value} --{signal.value}-->")
        self.state = state
        self.signal = signal


TRANSITIONS: dict[tuple[ConnectionState, FeedSignal], ConnectionState] = {
    (ConnectionState.DISCONNECTED, FeedSignal.CONNECT): ConnectionState.CONNECTING,
    (ConnectionState.CONNECTING, FeedSignal.OPENED): ConnectionState.CONNECTED,
    (ConnectionState.CONNECTING, FeedSignal.FAILED): ConnectionState.BACKING_OFF,
    (ConnectionState.CONNECTED, FeedSignal.FAILED): ConnectionState.BACKING_OFF,
    (ConnectionState.BACKING_OFF, FeedSignal.RETRY): ConnectionState.CONNECTING,
}


def next_state(state: ConnectionState, signal: FeedSignal) -> ConnectionState:
    """연결 상태 전이 함수 (순수 함수). SHUTDOWN 은 어느 상태에서든 CLOSED"""
    if signal is FeedSignal.SHUTDOWN:
        return ConnectionState.CLOSED
    nxt = TRANSITIONS.get((state, signal))
    if nxt is None:
        raise InvalidTransition(state, signal)
    return nxt


class WebSocketFeed:
    """CLOB 마켓 채널 WebSocket 수신기

    구독 목록은 재연결 후에도 유지되며 연결마다 전체 구독 메시지를 다시 보낸다.
    수신 이벤트는 도착 순서대로 on_event 에 전달된다 (동기/비동기 모두 허용).
    """

    def __init__(self, url: str, asset_ids: Iterable[str],
                 on_event: Callable[[PriceUpdateEvent], Any], *,
                 on_state: Callable[[ConnectionState], Any] | None = None,
                 reconnect_base: float = 0.5, reconnect_cap: float = 30.0,
                 reconnect_jitter: float = 0.2, grace_period: float = 5.0,
                 ping_interval: float | None = 20.0, open_timeout: float | None = 10.0,
                 connect: Callable[..., Any] = websockets.connect,
                 clock: Callable[[], float] = time.monotonic,
                 integrity_logger: IntegrityLogger | None = None):
        self.url = url
        self.subscription: set[str] = set(asset_ids)
        self.on_event = on_event
        self.on_state = on_state
        self.reconnect_base = reconnect_base
        self.reconnect_cap = reconnect_cap
        self.reconnect_jitter = reconnect_jitter
        self.grace_period = grace_period
        self.ping_interval = ping_interval
        self.open_timeout = open_timeout
        self.integrity_logger = integrity_logger
        self._connect = connect
        self._clock = clock

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.last_message_at: float | None = None
        self._closed = False
        self._ws = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @classmethod
    def from_config(cls, config: Config, asset_ids: Iterable[str],
                    on_event: Callable[[PriceUpdateEvent], Any], **kwargs) -> "WebSocketFeed":
        return cls(
            config.clob_ws_base, asset_ids, on_event,
            reconnect_base=config.ws_reconnect_base,
            reconnect_cap=config.ws_reconnect_cap,
            reconnect_jitter=config.ws_reconnect_jitter,
            grace_period=config.ws_grace_period,
            ping_interval=config.ws_ping_interval,
            open_timeout=config.ws_open_timeout,
            **kwargs,
        )

    # ── 상태 ──

    def _transition(self, signal: FeedSignal) -> None:
        self.state = next_state(self.state, signal)
        logger.debug(f"[WS] 상태 → {self.state.value}")
        if self.on_state:
            try:
                self.on_state(self.state)
            except Exception as e:
                logger.error(f"[WS] 상태 콜백 실패: {e}")

    @staticmethod
    def compute_reconnect_delay(attempt: int, base: float = 0.5, cap: float = 30.0,
                                jitter: float = 0.2) -> float:
        """재연결 대기: min(cap, base * 2^(attempt-1)) + U(0, jitter)"""
        exp = base * (2 ** min(max(attempt - 1, 0), 64))
        return min(cap, exp) + random.uniform(0, jitter)

    def is_stale(self, max_age: float, now: float | None = None) -> bool:
        """max_age 초 동안 메시지가 없었는지 여부"""
        if self.last_message_at is None:
            return True
        now = self._clock() if now is None else now
        return now - self.last_message_at > max_age

    # ── 구독 ──

    def build_subscribe_message(self) -> dict:
        return {
            "type": "MARKET",
            "assets_ids": sorted(self.subscription),
            "custom_feature_enabled": True,
        }

    async def subscribe(self, asset_ids: Iterable[str]) -> None:
        """구독 추가. 연결 중이면 증분 operation 메시지 전송"""
        new = [a for a in asset_ids if a not in self.subscription]
        self.subscription.update(new)
        if new:
            await self._send_operation("subscribe", new)

    async def unsubscribe(self, asset_ids: Iterable[str]) -> None:
        removed = [a for a in asset_ids if a in self.subscription]
        self.subscription.difference_update(removed)
        if removed:
            await self._send_operation("unsubscribe", removed)

    async def _send_operation(self, operation: str, asset_ids: list[str]) -> None:
        if self.state is not ConnectionState.CONNECTED or self._ws is None:
            return
        message = {
            "assets_ids": sorted(asset_ids),
            "operation": operation,
            "custom_feature_enabled": True,
        }
        try:
            await self._ws.send(json.dumps(message))
        except Exception as e:
            logger.warning(f"[WS] {operation} 전송 실패: {e}")

    # ── 실행 ──

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self) -> None:
        """연결 → 구독 → 수신 루프. close() 전까지 재연결 반복"""
        if self._closed:
            return
        self._transition(FeedSignal.CONNECT)
        while not self._closed:
            opened_at: float | None = None
            try:
                async with self._connect(
                    self.url,
                    ping_interval=self.ping_interval,
                    open_timeout=self.open_timeout,
                ) as ws:
                    self._ws = ws
                    opened_at = self._clock()
                    await ws.send(json.dumps(self.build_subscribe_message()))
                    self._transition(FeedSignal.OPENED)
                    logger.info(f"[연결] CLOB WebSocket 연결 성공 (구독 {len(self.subscription)}개)")
                    await self._read_loop(ws)
                reason = "connection closed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
            finally:
                self._ws = None

            if self._closed:
                break

            if opened_at is not None and self._clock() - opened_at >= self.grace_period:
                self.attempts = 0
            self.attempts += 1
            self._transition(FeedSignal.FAILED)
            delay = self.compute_reconnect_delay(
                self.attempts, self.reconnect_base, self.reconnect_cap, self.reconnect_jitter,
            )
            logger.error(f"[에러-WS] {reason} — {delay:.2f}초 후 재연결 (시도 {self.attempts})")
            if self.integrity_logger:
                self.integrity_logger.record_reconnect(time.time(), reason)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            if self._closed:
                break
            self._transition(FeedSignal.RETRY)

    async def _read_loop(self, ws) -> None:
        first = True
        async for raw in ws:
            self.last_message_at = self._clock()
            if first:
                self.attempts = 0
                first = False
            await self._handle_raw(ws, raw)

    async def _handle_raw(self, ws, raw: str | bytes) -> None:
        """수신 프레임 처리. 파싱/핸들러 실패는 로그만 남기고 건너뜀"""
        recv_time = time.time()
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        text = raw.strip()
        if text.upper() == "PONG":
            return
        if text.upper() == "PING":
            await ws.send("PONG")
            return

        try:
            data = json.loads(text)
        except ValueError as e:
            logger.warning(f"[WS] 파싱 실패: {e} ({text[:80]!r})")
            if self.integrity_logger:
                self.integrity_logger.record_parse_error(str(e))
            return

        if is_ping(data):
            await self._reply_ping(ws, data)
            return

        for event in parse_ws_message(data, recv_time):
            if self.integrity_logger:
                self.integrity_logger.increment_message_count(event.asset_id)
            try:
                result = self.on_event(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[WS] 이벤트 처리 실패 ({event.event_type.value} {event.asset_id}): {e}")

    async def _reply_ping(self, ws, data: dict) -> None:
        kind = str(data.get("type") or data.get("event_type") or "").lower()
        reply: dict[str, Any] = {"type": "pong" if kind == "ping" else "heartbeat"}
        if "id" in data:
            reply["id"] = data["id"]
        await ws.send(json.dumps(reply))

    async def close(self) -> None:
        """피드 종료. 백오프 대기 중이어도 즉시 깨어나 CLOSED 로 전환"""
        if self._closed:
            return
        self._closed = True
        self._transition(FeedSignal.SHUTDOWN)
        self._stop.set()
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"[WS] 소켓 종료 중 에러: {e}")
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[WS] 피드 종료")
