"""REST 전송 모듈 - 레이트리밋, 타임아웃, 재시도가 적용된 JSON 조회"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable

import aiohttp

from pmdata.errors import (
    FetchError, HttpError, NetworkError, ParseError, RequestTimeoutError,
)
from pmdata.models import FetchRequest
from pmdata.rate_limiter import RateLimiter, RateLimitTable

logger = logging.getLogger(__name__)


class HttpClient:
    """폴리마켓 REST 클라이언트 (Gamma / CLOB / Data API 공용)"""

    def __init__(self, limiter: RateLimiter | None = None,
                 rate_limits: RateLimitTable | None = None,
                 session: aiohttp.ClientSession | None = None, *,
                 base_delay: float = 0.2, max_delay: float = 30.0,
                 default_timeout: float = 10.0, default_retries: int = 2,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.limiter = limiter or RateLimiter()
        self.rate_limits = rate_limits
        self._session = session
        self._owns_session = session is None
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.default_timeout = default_timeout
        self.default_retries = default_retries
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, limiter: RateLimiter | None = None) -> "HttpClient":
        return cls(
            limiter=limiter,
            rate_limits=RateLimitTable.from_config(config),
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            default_timeout=config.rest_timeout,
            default_retries=config.max_retries,
        )

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or (self._owns_session and self._session.closed):
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def compute_backoff(attempt: int, base: float = 0.2, cap: float = 30.0,
                        jitter: float = 0.1) -> float:
        """재시도 대기 시간: min(cap, base * 2^(attempt-1) + U(0, jitter))"""
        exp = base * (2 ** min(max(attempt - 1, 0), 64))
        return min(cap, exp + random.uniform(0, jitter))

    async def get_json(self, url: str, params: dict[str, Any] | None = None,
                       timeout: float | None = None,
                       max_retries: int | None = None) -> Any:
        """GET 요청 단축 메서드"""
        request = FetchRequest(
            url=url,
            params=params,
            timeout=self.default_timeout if timeout is None else timeout,
            max_retries=self.default_retries if max_retries is None else max_retries,
        )
        return await self.fetch_json(request)

    async def fetch_json(self, request: FetchRequest) -> Any:
        """JSON 조회 (최대 1 + max_retries회 시도)

        매 시도 전에 레이트리밋 토큰을 획득한다. 재시도 불가 에러는 즉시 전파.
        """
        rule = self.rate_limits.resolve(request.url) if self.rate_limits else None
        total = 1 + max(0, request.max_retries)
        last_status: int | None = None

        for attempt in range(1, total + 1):
            await self.limiter.acquire(rule)
            try:
                return await self._request_once(request)
            except FetchError as e:
                if e.status is not None:
                    last_status = e.status
                if not e.retryable or attempt >= total:
                    e.attempts = attempt
                    e.last_status = last_status
                    if e.retryable:
                        logger.error(f"[HTTP] {request.url} 재시도 소진 ({attempt}/{total}): {e}")
                    raise
                delay = self.compute_backoff(attempt, self.base_delay, self.max_delay)
                logger.warning(
                    f"[HTTP] {request.url} 실패 (시도 {attempt}/{total}): {e} — {delay:.2f}초 후 재시도"
                )
                await self._sleep(delay)

        raise FetchError(f"no attempts made for {request.url}", url=request.url)

    async def _request_once(self, request: FetchRequest) -> Any:
        """단일 시도. 실패는 FetchError 하위 타입으로 분류"""
        session = await self._get_session()
        try:
            async with session.request(
                request.method,
                request.url,
                params=request.params,
                json=request.body,
                headers=request.headers,
                timeout=aiohttp.ClientTimeout(total=request.timeout),
            ) as resp:
                status = resp.status
                reason = resp.reason if isinstance(getattr(resp, "reason", None), str) else ""
                try:
                    text = await resp.text()
                except UnicodeDecodeError as exc:
                    if status >= 400:
                        raise HttpError(status, request.url, None, reason) from exc
                    raise ParseError(
                        f"undecodable body from {request.url}: {exc.reason}",
                        url=request.url, status=status,
                    ) from exc
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(
                f"request timed out after {request.timeout}s: {request.url}",
                url=request.url,
            ) from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(f"network error for {request.url}: {exc}", url=request.url) from exc

        if status >= 400:
            raise HttpError(status, request.url, _decode_error_body(text), reason)

        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            raise ParseError(
                f"invalid JSON from {request.url}: {text[:80]!r}", url=request.url, status=status,
            ) from exc


def _decode_error_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text
