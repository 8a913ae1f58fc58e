"""에러 타입 정의 - REST 전송 실패 분류 및 재시도 가능 여부"""

from __future__ import annotations

import json
from typing import Any


class FetchError(Exception):
    """REST 호출 실패 기본 클래스"""

    retryable = False

    def __init__(self, message: str, *, url: str | None = None,
                 status: int | None = None):
        super().__init__(message)
        self.url = url
        self.status = status
        self.attempts = 0
        self.last_status: int | None = status


class NetworkError(FetchError):
    """전송 계층 실패 (연결 거부, 리셋 등) - 항상 재시도"""

    retryable = True


class RequestTimeoutError(NetworkError):
    """요청 타임아웃 - 재시도 예산을 공유"""


class HttpError(FetchError):
    """비-2xx 응답. 429/5xx만 재시도"""

    def __init__(self, status: int, url: str, body: Any = None, reason: str = ""):
        detail = error_body_message(body)
        message = f"HTTP {status} {reason}".rstrip() + f" for {url}"
        if detail:
            message += f": {detail}"
        super().__init__(message, url=url, status=status)
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class ParseError(FetchError):
    """응답 본문이 JSON이 아니거나 기대한 형태가 아님 - 재시도 안 함"""


class RateLimitWaitExceeded(FetchError):
    """레이트리밋 대기 누적 시간이 상한 초과"""


class RefreshError(Exception):
    """MarketStore.refresh 실패 - 하위 에러 목록 보관"""

    def __init__(self, condition_id: str, errors: list[BaseException]):
        self.condition_id = condition_id
        self.errors = list(errors)
        first = self.errors[0] if self.errors else None
        super().__init__(
            f"refresh failed for {condition_id} ({len(self.errors)} errors): {first}"
        )


def error_body_message(body: Any) -> str:
    """에러 응답 본문에서 사람이 읽을 메시지 추출 (최대 200자)"""
    if not body:
        return ""
    if isinstance(body, str):
        return body[:200]
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value[:200]
        try:
            return json.dumps(body)[:200]
        except (TypeError, ValueError):
            return "[object]"
    return str(body)[:200]


def is_no_orderbook_error(err: BaseException) -> bool:
    """CLOB 'No orderbook exists' 404 여부"""
    if isinstance(err, HttpError):
        if err.status != 404:
            return False
        message = error_body_message(err.body) or str(err)
    else:
        message = str(err)
    return "no orderbook exists" in message.lower()
