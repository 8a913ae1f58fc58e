"""폴리마켓 REST 엔드포인트 모듈 - Gamma / CLOB / Data API 조회 및 정규화"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from pmdata import normalizer
from pmdata.errors import HttpError, ParseError, is_no_orderbook_error
from pmdata.models import Holder, NormalizedMarket, OrderbookState, Trade

if TYPE_CHECKING:
    from pmdata.config import Config
    from pmdata.http_client import HttpClient

logger = logging.getLogger(__name__)


class PolymarketApi:
    """엔드포인트별 조회 + 정규화 (HttpClient 위의 얇은 계층)"""

    def __init__(self, http: HttpClient, config: Config):
        self.http = http
        self.config = config

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> Any:
        return await self.http.get_json(url, params=params, timeout=self.config.rest_timeout)

    # ── Gamma ──

    async def fetch_markets(self, limit: int = 10, offset: int = 0) -> list[NormalizedMarket]:
        """활성 마켓 목록 (최신순)"""
        data = await self._get(f"{self.config.gamma_base}/markets", {
            "limit": limit,
            "offset": offset,
            "closed": "false",
            "active": "true",
            "order": "id",
            "ascending": "false",
        })
        if not isinstance(data, (list, dict)):
            raise ParseError("unexpected /markets response shape", url=f"{self.config.gamma_base}/markets")
        return normalizer.normalize_markets(data)

    async def fetch_events(self, limit: int = 10, offset: int = 0) -> list[NormalizedMarket]:
        """활성 이벤트의 하위 마켓 목록"""
        data = await self._get(f"{self.config.gamma_base}/events", {
            "limit": limit,
            "offset": offset,
            "closed": "false",
            "active": "true",
            "order": "id",
            "ascending": "false",
        })
        if not isinstance(data, (list, dict)):
            raise ParseError("unexpected /events response shape", url=f"{self.config.gamma_base}/events")
        return normalizer.normalize_events(data)

    async def fetch_market_by_slug(self, slug: str) -> NormalizedMarket | None:
        data = await self._get(f"{self.config.gamma_base}/markets/slug/{slug}")
        if isinstance(data, dict) and isinstance(data.get("market"), dict):
            data = data["market"]
        return normalizer.normalize_market(data)

    async def fetch_market_by_condition_id(self, condition_id: str) -> NormalizedMarket | None:
        data = await self._get(f"{self.config.gamma_base}/markets", {
            "condition_ids": condition_id,
            "limit": 1,
        })
        for market in normalizer.normalize_markets(data):
            if market.condition_id == condition_id:
                return market
        return None

    # ── CLOB ──

    async def get_orderbook(self, token_id: str,
                            allow_no_orderbook: bool = False) -> OrderbookState | None:
        """토큰 오더북. allow_no_orderbook 이면 'No orderbook exists' 404 → None"""
        url = f"{self.config.clob_rest_base}/book"
        try:
            data = await self._get(url, {"token_id": token_id})
        except HttpError as e:
            if allow_no_orderbook and is_no_orderbook_error(e):
                return None
            raise
        book = normalizer.normalize_orderbook(data)
        if book is None:
            raise ParseError(f"unexpected /book response for {token_id}", url=url)
        return book

    async def get_prices(self, token_id: str,
                         allow_no_orderbook: bool = False) -> tuple[float | None, float | None] | None:
        """(best_bid, best_ask) - side=BUY / side=SELL 동시 조회"""
        url = f"{self.config.clob_rest_base}/price"
        try:
            buy, sell = await asyncio.gather(
                self._get(url, {"token_id": token_id, "side": "BUY"}),
                self._get(url, {"token_id": token_id, "side": "SELL"}),
            )
        except HttpError as e:
            if allow_no_orderbook and is_no_orderbook_error(e):
                return None
            raise
        return normalizer.extract_price(buy), normalizer.extract_price(sell)

    async def get_midpoint(self, token_id: str) -> float | None:
        data = await self._get(f"{self.config.clob_rest_base}/midpoint", {"token_id": token_id})
        return normalizer.extract_midpoint(data)

    async def get_price_history(self, token_id: str) -> list[float]:
        """가격 히스토리. /prices-history 가 404 면 /price_history 로 재조회"""
        params = {
            "market": token_id,
            "interval": self.config.history_range,
            "fidelity": self.config.history_fidelity,
        }
        try:
            data = await self._get(f"{self.config.clob_rest_base}/prices-history", params)
        except HttpError as e:
            if e.status != 404:
                raise
            logger.info(f"[히스토리] {token_id} /prices-history 404, /price_history 로 재시도")
            data = await self._get(f"{self.config.clob_rest_base}/price_history", params)
        return normalizer.extract_history(data)

    # ── Data API ──

    async def get_holders(self, condition_id: str, limit: int | None = None) -> list[Holder]:
        data = await self._get(f"{self.config.data_api_base}/holders", {
            "market": condition_id,
            "limit": limit or self.config.holders_limit,
        })
        return normalizer.normalize_holders(data)

    async def get_trades(self, condition_id: str, limit: int = 10) -> list[Trade]:
        data = await self._get(f"{self.config.data_api_base}/trades", {
            "market": condition_id,
            "limit": limit,
        })
        return normalizer.normalize_trades(data)
