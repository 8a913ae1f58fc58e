"""에러 분류 테스트
Feature: polymarket-market-data
재시도 가능 여부, 에러 본문 메시지 추출, no-orderbook 판별 검증
"""

import pytest
from hypothesis import given, strategies as st, settings

from pmdata.errors import (
    FetchError, HttpError, NetworkError, ParseError, RateLimitWaitExceeded,
    RefreshError, RequestTimeoutError, error_body_message, is_no_orderbook_error,
)


class TestRetryable:

    @given(status=st.integers(min_value=400, max_value=599))
    @settings(max_examples=200)
    def test_http_status(self, status):
        err = HttpError(status, "https://clob.polymarket.com/book")
        assert err.retryable == (status == 429 or status >= 500)
        assert err.status == status

    def test_transport_errors(self):
        assert NetworkError("x").retryable
        assert RequestTimeoutError("x").retryable
        assert isinstance(RequestTimeoutError("x"), NetworkError)
        assert not ParseError("x").retryable
        assert not RateLimitWaitExceeded("x").retryable
        assert isinstance(ParseError("x"), FetchError)


class TestBodyMessage:

    @pytest.mark.parametrize("body,expected", [
        ({"error": "bad token"}, "bad token"),
        ({"message": "slow down"}, "slow down"),
        ({"detail": "nope"}, "nope"),
        ({"error": "", "message": "second"}, "second"),
        ("plain text", "plain text"),
        (None, ""),
        ({"code": 1}, '{"code": 1}'),
    ])
    def test_extract(self, body, expected):
        assert error_body_message(body) == expected

    def test_truncated(self):
        assert len(error_body_message({"error": "x" * 500})) == 200
        assert len(error_body_message("y" * 500)) == 200

    def test_http_error_message(self):
        err = HttpError(503, "https://gamma-api.polymarket.com/markets", {"error": "maintenance"}, "Service Unavailable")
        assert "503" in str(err)
        assert "maintenance" in str(err)
        assert err.url == "https://gamma-api.polymarket.com/markets"


class TestNoOrderbook:

    def test_detected(self):
        err = HttpError(404, "u", {"error": "No orderbook exists for the requested token id"})
        assert is_no_orderbook_error(err)

    def test_other_status(self):
        err = HttpError(400, "u", {"error": "No orderbook exists for the requested token id"})
        assert not is_no_orderbook_error(err)

    def test_other_404(self):
        assert not is_no_orderbook_error(HttpError(404, "u", {"error": "market not found"}))

    def test_plain_exception(self):
        assert not is_no_orderbook_error(ValueError("boom"))


def test_refresh_error_keeps_errors():
    inner = [NetworkError("a"), ParseError("b")]
    err = RefreshError("C1", inner)
    assert err.errors == inner
    assert err.condition_id == "C1"
    assert "2 errors" in str(err)
