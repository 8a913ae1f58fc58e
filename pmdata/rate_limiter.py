"""레이트리밋 모듈 - 엔드포인트별 고정 윈도우 토큰 버킷"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable
from urllib.parse import urlsplit

from pmdata.errors import RateLimitWaitExceeded
from pmdata.models import RateLimitRule, TokenBucket

logger = logging.getLogger(__name__)


class RateLimitTable:
    """URL → RateLimitRule 해석 (경로 prefix 최장 일치, 없으면 호스트 규칙)"""

    def __init__(self, path_limits: list[dict], host_limits: list[dict],
                 window: float):
        self.window = window
        self._path_rules: dict[str, list[tuple[str, RateLimitRule]]] = {}
        self._host_rules: dict[str, RateLimitRule] = {}
        for item in path_limits:
            host, path = item["host"], item["path"]
            rule = RateLimitRule(host + path, int(item["capacity"]), window)
            self._path_rules.setdefault(host, []).append((path, rule))
        for item in host_limits:
            host = item["host"]
            self._host_rules[host] = RateLimitRule(host, int(item["capacity"]), window)
        # 긴 prefix 우선
        for rules in self._path_rules.values():
            rules.sort(key=lambda pr: len(pr[0]), reverse=True)

    @classmethod
    def from_config(cls, config) -> "RateLimitTable":
        return cls(config.path_limits, config.host_limits, config.rate_limit_window)

    def resolve(self, url: str) -> RateLimitRule | None:
        """요청 URL에 적용할 규칙 반환 (해당 없으면 None → 제한 없음)"""
        parts = urlsplit(url)
        host = parts.netloc.lower()
        path = parts.path or "/"
        for prefix, rule in self._path_rules.get(host, []):
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return rule
        return self._host_rules.get(host)


class RateLimiter:
    """키별 토큰 버킷 레이트리미터

    윈도우마다 capacity 개의 토큰이 한 번에 리필된다. 토큰이 없으면
    reset_at까지 (+ 20~120ms 지터) 대기한 뒤 다시 시도한다.
    대기는 락 밖에서 하므로 다른 키의 호출을 막지 않는다.
    """

    JITTER_MIN = 0.02
    JITTER_MAX = 0.12

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 max_wait: float | None = None):
        self._clock = clock
        self._sleep = sleep
        self.max_wait = max_wait
        self._buckets: dict[str, TokenBucket] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def jitter(self) -> float:
        return random.uniform(self.JITTER_MIN, self.JITTER_MAX)

    def bucket(self, key: str) -> TokenBucket | None:
        """현재 버킷 상태 (조회용)"""
        return self._buckets.get(key)

    async def acquire(self, rule: RateLimitRule | None) -> float:
        """토큰 1개 획득. 총 대기 시간(초) 반환"""
        if rule is None:
            return 0.0

        waited = 0.0
        lock = self._lock_for(rule.key)
        while True:
            async with lock:
                now = self._clock()
                bucket = self._buckets.get(rule.key)
                if bucket is None or now >= bucket.reset_at:
                    bucket = TokenBucket(tokens=rule.capacity, reset_at=now + rule.window)
                    self._buckets[rule.key] = bucket
                if bucket.tokens > 0:
                    bucket.tokens -= 1
                    return waited
                delay = max(0.0, bucket.reset_at - now) + self.jitter()

            if self.max_wait is not None and waited + delay > self.max_wait:
                raise RateLimitWaitExceeded(
                    f"rate limit wait for {rule.key} exceeds {self.max_wait}s"
                )
            logger.debug(f"[레이트리밋] {rule.key} 토큰 소진, {delay:.3f}초 대기")
            await self._sleep(delay)
            waited += delay
