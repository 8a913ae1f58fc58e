"""PolymarketApi 테스트
Feature: polymarket-market-data
엔드포인트 URL/파라미터, 응답 정규화, no-orderbook 처리, 히스토리 fallback 검증
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from pmdata.api import PolymarketApi
from pmdata.config import Config
from pmdata.errors import HttpError, NetworkError, ParseError

NO_BOOK = {"error": "No orderbook exists for the requested token id"}


@pytest.fixture
def config():
    return Config()


def make_api(config, *results):
    http = MagicMock()
    http.get_json = AsyncMock(side_effect=list(results))
    return PolymarketApi(http, config), http


class TestGamma:

    def test_fetch_markets(self, config):
        api, http = make_api(config, [
            {"conditionId": "C1", "clobTokenIds": '["A","B"]', "question": "Q1"},
            {"conditionId": "C2", "clobTokenIds": '["C","D"]'},
        ])
        markets = asyncio.run(api.fetch_markets(limit=2))
        assert [m.condition_id for m in markets] == ["C1", "C2"]
        args, kwargs = http.get_json.call_args
        assert args[0] == "https://gamma-api.polymarket.com/markets"
        assert kwargs["params"]["limit"] == 2
        assert kwargs["params"]["closed"] == "false"
        assert kwargs["params"]["active"] == "true"
        assert kwargs["timeout"] == config.rest_timeout

    def test_fetch_markets_bad_shape(self, config):
        api, _ = make_api(config, "oops")
        with pytest.raises(ParseError):
            asyncio.run(api.fetch_markets())

    def test_fetch_events(self, config):
        api, http = make_api(config, {"events": [
            {"id": "E1", "title": "Event", "markets": [{"conditionId": "C1", "clobTokenIds": ["A"]}]},
        ]})
        markets = asyncio.run(api.fetch_events())
        assert markets[0].event_id == "E1"
        assert http.get_json.call_args.args[0].endswith("/events")

    def test_fetch_by_slug_unwraps(self, config):
        api, http = make_api(config, {"market": {"conditionId": "C9", "clobTokenIds": ["X", "Y"]}})
        market = asyncio.run(api.fetch_market_by_slug("some-slug"))
        assert market.condition_id == "C9"
        assert http.get_json.call_args.args[0].endswith("/markets/slug/some-slug")

    def test_fetch_by_condition_id(self, config):
        api, http = make_api(config, [{"conditionId": "C1", "clobTokenIds": ["A", "B"]}])
        market = asyncio.run(api.fetch_market_by_condition_id("C1"))
        assert market.token_ids == ("A", "B")
        assert http.get_json.call_args.kwargs["params"] == {"condition_ids": "C1", "limit": 1}

    def test_fetch_by_condition_id_not_found(self, config):
        api, _ = make_api(config, [])
        assert asyncio.run(api.fetch_market_by_condition_id("C1")) is None


class TestClob:

    def test_orderbook(self, config):
        api, http = make_api(config, {"bids": [["0.4", "1"]], "asks": [["0.6", "2"]]})
        book = asyncio.run(api.get_orderbook("A"))
        assert book.best_bid == 0.4
        assert http.get_json.call_args.kwargs["params"] == {"token_id": "A"}

    def test_orderbook_missing_allowed(self, config):
        api, _ = make_api(config, HttpError(404, "u", NO_BOOK))
        assert asyncio.run(api.get_orderbook("A", allow_no_orderbook=True)) is None

    def test_orderbook_missing_not_allowed(self, config):
        api, _ = make_api(config, HttpError(404, "u", NO_BOOK))
        with pytest.raises(HttpError):
            asyncio.run(api.get_orderbook("A"))

    def test_orderbook_other_404_raises(self, config):
        api, _ = make_api(config, HttpError(404, "u", {"error": "not found"}))
        with pytest.raises(HttpError):
            asyncio.run(api.get_orderbook("A", allow_no_orderbook=True))

    def test_orderbook_bad_shape(self, config):
        api, _ = make_api(config, ["not", "a", "book"])
        with pytest.raises(ParseError):
            asyncio.run(api.get_orderbook("A"))

    def test_prices(self, config):
        api, http = make_api(config, {"price": "0.45"}, {"price": "0.47"})
        assert asyncio.run(api.get_prices("A")) == (0.45, 0.47)
        sides = [c.kwargs["params"]["side"] for c in http.get_json.call_args_list]
        assert sides == ["BUY", "SELL"]

    def test_prices_no_orderbook(self, config):
        api, _ = make_api(config, HttpError(404, "u", NO_BOOK), HttpError(404, "u", NO_BOOK))
        assert asyncio.run(api.get_prices("A", allow_no_orderbook=True)) is None

    def test_midpoint(self, config):
        api, _ = make_api(config, {"mid": "0.46"})
        assert asyncio.run(api.get_midpoint("A")) == 0.46

    def test_history(self, config):
        api, http = make_api(config, {"history": [{"t": 1, "p": 0.5}]})
        assert asyncio.run(api.get_price_history("A")) == [0.5]
        args, kwargs = http.get_json.call_args
        assert args[0].endswith("/prices-history")
        assert kwargs["params"] == {"market": "A", "interval": "1d", "fidelity": 30}

    def test_history_fallback_on_404(self, config):
        api, http = make_api(config, HttpError(404, "u"), {"history": [{"p": "0.7"}]})
        assert asyncio.run(api.get_price_history("A")) == [0.7]
        assert http.get_json.call_args.args[0].endswith("/price_history")

    def test_history_no_fallback_on_network_error(self, config):
        api, http = make_api(config, NetworkError("reset"))
        with pytest.raises(NetworkError):
            asyncio.run(api.get_price_history("A"))
        assert http.get_json.call_count == 1


class TestDataApi:

    def test_holders(self, config):
        api, http = make_api(config, [{"token": "A", "holders": [{"proxyWallet": "0x1", "amount": 5}]}])
        holders = asyncio.run(api.get_holders("C1"))
        assert holders[0].wallet == "0x1"
        assert http.get_json.call_args.kwargs["params"] == {"market": "C1", "limit": 8}

    def test_trades(self, config):
        api, http = make_api(config, [{"price": 0.5, "size": 2, "side": "SELL"}])
        trades = asyncio.run(api.get_trades("C1", limit=3))
        assert trades[0].side == "SELL"
        assert http.get_json.call_args.args[0] == "https://data-api.polymarket.com/trades"
