"""마켓 상태 저장소 모듈 - REST 스냅샷과 WebSocket 델타 병합"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable

from pmdata.config import Config
from pmdata.errors import RefreshError, is_no_orderbook_error
from pmdata.models import (
    EventType, MarketEntry, NormalizedMarket, OrderbookLevel, OrderbookState,
    PriceUpdateEvent, TokenSnapshot,
)
from pmdata.normalizer import sort_levels

if TYPE_CHECKING:
    from pmdata.api import PolymarketApi
    from pmdata.integrity_logger import IntegrityLogger

logger = logging.getLogger(__name__)


def midpoint_from(bid: float | None, ask: float | None) -> float | None:
    if bid is None or ask is None:
        return None
    return (bid + ask) / 2


class MarketStore:
    """condition_id 별 MarketEntry 저장소

    REST 갱신은 마켓별 락으로 직렬화되고, 결과 반영과 WS 이벤트 병합은
    await 없이 동기적으로 수행되므로 서로 섞이지 않는다 (나중에 쓴 쪽이 이김).
    """

    def __init__(self, api: PolymarketApi, config: Config | None = None,
                 integrity_logger: IntegrityLogger | None = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.api = api
        self.config = config or Config()
        self.integrity_logger = integrity_logger
        self._clock = clock
        self._sleep = sleep
        self._entries: dict[str, MarketEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._asset_index: dict[str, str] = {}   # asset_id → condition_id

        # 연속성 검사 상태 (asset 단위)
        self._last_hash: dict[str, str] = {}
        self._last_seq: dict[str, int] = {}
        self._last_ts: dict[str, float] = {}
        self._last_resync: dict[str, float] = {}
        self._resync_tasks: set[asyncio.Task] = set()

    # ── 등록/조회 ──

    def track(self, market: NormalizedMarket) -> None:
        """마켓 등록 (이미 있으면 메타데이터만 교체, 시세 상태 유지)"""
        entry = self._entries.get(market.condition_id)
        if entry is None:
            entry = MarketEntry(market=market)
            self._entries[market.condition_id] = entry
            self._locks[market.condition_id] = asyncio.Lock()
            logger.info(f"[스토어] 마켓 등록 {market.condition_id} ({market.question})")
        else:
            entry.market = market
        for token_id in market.token_ids:
            entry.tokens.setdefault(token_id, TokenSnapshot(token_id=token_id))
            self._asset_index[token_id] = market.condition_id

    async def load_market(self, condition_id: str) -> MarketEntry | None:
        """condition_id 로 마켓 조회 후 등록. 조회 실패 시 None"""
        if condition_id not in self._entries:
            market = await self.api.fetch_market_by_condition_id(condition_id)
            if market is None:
                logger.warning(f"[스토어] 마켓을 찾을 수 없음: {condition_id}")
                return None
            self.track(market)
        return self.get(condition_id)

    def get(self, condition_id: str) -> MarketEntry | None:
        """읽기 전용 사본 반환 (수정해도 저장소에 영향 없음)"""
        entry = self._entries.get(condition_id)
        if entry is None:
            return None
        return dataclasses.replace(
            entry,
            tokens=copy.deepcopy(entry.tokens),
            holders=list(entry.holders),
        )

    def condition_ids(self) -> list[str]:
        return list(self._entries)

    def asset_ids(self) -> list[str]:
        return list(self._asset_index)

    def condition_for_asset(self, asset_id: str) -> str | None:
        return self._asset_index.get(asset_id)

    # ── REST 갱신 ──

    async def refresh(self, condition_id: str, *, history: bool = True,
                      holders: bool = True) -> MarketEntry:
        """REST 로 마켓 전체 스냅샷 갱신

        토큰별 오더북/가격/미드포인트/히스토리와 마켓 홀더를 동시에 조회한다.
        'No orderbook exists' 404 는 실패가 아니라 no_orderbook 표시로 처리한다.
        그 외 하나라도 실패하면 아무것도 반영하지 않고 RefreshError 를 던진다.
        """
        entry = self._entries.get(condition_id)
        if entry is None:
            raise KeyError(condition_id)

        async with self._locks[condition_id]:
            token_ids = list(entry.market.token_ids)
            coros = []
            for token_id in token_ids:
                coros.append(self.api.get_orderbook(token_id, allow_no_orderbook=True))
                coros.append(self.api.get_prices(token_id, allow_no_orderbook=True))
                coros.append(self.api.get_midpoint(token_id))
                if history:
                    coros.append(self.api.get_price_history(token_id))
            if holders:
                coros.append(self.api.get_holders(condition_id, self.config.holders_limit))

            results = await asyncio.gather(*coros, return_exceptions=True)

            errors: list[BaseException] = []
            for i, r in enumerate(results):
                if not isinstance(r, BaseException):
                    continue
                if is_no_orderbook_error(r):
                    results[i] = None
                else:
                    errors.append(r)

            if errors:
                err = RefreshError(condition_id, errors)
                entry.last_error = err
                if self.integrity_logger:
                    self.integrity_logger.record_refresh(condition_id, ok=False)
                raise err

            # 결과 반영 (동기)
            now = self._clock()
            per_token = 4 if history else 3
            for idx, token_id in enumerate(token_ids):
                chunk = results[idx * per_token:(idx + 1) * per_token]
                book, prices, midpoint = chunk[0], chunk[1], chunk[2]
                snap = entry.tokens.setdefault(token_id, TokenSnapshot(token_id=token_id))
                self._apply_snapshot(snap, book, prices, midpoint)
                if history:
                    snap.history = list(chunk[3] or [])
            if history:
                entry.last_history_update = now
            if holders:
                entry.holders = list(results[-1] or [])
                entry.last_holders_update = now
            entry.last_rest_update = now
            entry.last_error = None

        if self.integrity_logger:
            self.integrity_logger.record_refresh(condition_id, ok=True)
        logger.debug(f"[스토어] {condition_id} REST 갱신 완료")
        return self.get(condition_id)

    def _apply_snapshot(self, snap: TokenSnapshot, book: OrderbookState | None,
                        prices: tuple[float | None, float | None] | None,
                        midpoint: float | None) -> None:
        if book is None and prices is None:
            snap.no_orderbook = True
            snap.orderbook = None
            snap.best_bid = snap.best_ask = None
            snap.midpoint = midpoint
            return

        snap.no_orderbook = False
        snap.orderbook = book
        bid, ask = prices if prices is not None else (None, None)
        if bid is None and book is not None:
            bid = book.best_bid
        if ask is None and book is not None:
            ask = book.best_ask
        snap.best_bid = bid
        snap.best_ask = ask
        snap.midpoint = midpoint if midpoint is not None else midpoint_from(bid, ask)
        if book is not None and book.is_crossed:
            self._report_crossed(snap.token_id, book)

    # ── WS 병합 ──

    def apply_event(self, event: PriceUpdateEvent) -> bool:
        """WS 이벤트 병합. 추적하지 않는 asset 이거나 중복이면 False"""
        condition_id = self._asset_index.get(event.asset_id)
        if condition_id is None:
            return False
        entry = self._entries[condition_id]
        snap = entry.tokens.setdefault(event.asset_id, TokenSnapshot(token_id=event.asset_id))

        if not self._check_continuity(event):
            return False

        if event.event_type is EventType.BOOK:
            if event.book is not None:
                snap.orderbook = event.book
                snap.no_orderbook = False
                snap.best_bid = event.book.best_bid
                snap.best_ask = event.book.best_ask
        elif event.event_type is EventType.PRICE_CHANGE:
            if event.side and event.price is not None:
                self._apply_level(snap, event.side, event.price, event.size or 0.0)
            if event.best_bid is not None:
                snap.best_bid = event.best_bid
            elif snap.orderbook is not None and event.side == "BUY":
                snap.best_bid = snap.orderbook.best_bid
            if event.best_ask is not None:
                snap.best_ask = event.best_ask
            elif snap.orderbook is not None and event.side == "SELL":
                snap.best_ask = snap.orderbook.best_ask
        elif event.event_type is EventType.BEST_BID_ASK:
            if event.best_bid is not None:
                snap.best_bid = event.best_bid
            if event.best_ask is not None:
                snap.best_ask = event.best_ask
        elif event.event_type is EventType.TRADE:
            if event.last_trade is not None:
                snap.last_trade = event.last_trade
        elif event.event_type is EventType.TICK_SIZE_CHANGE:
            if event.tick_size is not None:
                if snap.orderbook is None:
                    snap.orderbook = OrderbookState()
                snap.orderbook.tick_size = event.tick_size

        mid = midpoint_from(snap.best_bid, snap.best_ask)
        if mid is not None:
            snap.midpoint = mid
        if snap.orderbook is not None and snap.orderbook.is_crossed:
            self._report_crossed(event.asset_id, snap.orderbook)
        entry.last_ws_update = self._clock()
        return True

    def _apply_level(self, snap: TokenSnapshot, side: str, price: float, size: float) -> None:
        """단일 호가 레벨 upsert/삭제 (size <= 0 이면 삭제)"""
        if snap.orderbook is None:
            snap.orderbook = OrderbookState()
        book = snap.orderbook
        is_bid = side.upper() == "BUY"
        levels = book.bids if is_bid else book.asks
        kept = [lv for lv in levels if lv.price != price]
        if size > 0:
            kept.append(OrderbookLevel(price=price, size=size))
        kept = sort_levels(kept, "bid" if is_bid else "ask")
        kept = kept[:self.config.orderbook_depth * 5]
        if is_bid:
            book.bids = kept
        else:
            book.asks = kept

    def _check_continuity(self, event: PriceUpdateEvent) -> bool:
        """중복 해시면 False. 시퀀스 갭/타임스탬프 역전은 기록 후 재동기화 예약"""
        asset_id = event.asset_id
        if event.hash and self._last_hash.get(asset_id) == event.hash:
            logger.debug(f"[스토어] 중복 이벤트 무시 {asset_id} hash={event.hash}")
            return False

        prev_seq = self._last_seq.get(asset_id)
        if event.sequence is not None and prev_seq is not None and event.sequence != prev_seq + 1:
            if self.integrity_logger:
                self.integrity_logger.record_gap(
                    asset_id, prev_seq + 1, event.sequence, event.recv_time,
                )
            self.schedule_resync(asset_id, f"seq gap {prev_seq}->{event.sequence}")

        prev_ts = self._last_ts.get(asset_id)
        if event.timestamp and prev_ts and event.timestamp < prev_ts:
            if self.integrity_logger:
                self.integrity_logger.record_gap(
                    asset_id, prev_ts, event.timestamp, event.recv_time, kind="timestamp",
                )
            self.schedule_resync(asset_id, "timestamp reorder")

        if event.hash:
            self._last_hash[asset_id] = event.hash
        if event.sequence is not None:
            self._last_seq[asset_id] = event.sequence
        if event.timestamp:
            self._last_ts[asset_id] = event.timestamp
        return True

    def _report_crossed(self, asset_id: str, book: OrderbookState) -> None:
        logger.warning(f"[스토어] 교차 호가 {asset_id} bid={book.best_bid} ask={book.best_ask}")
        if self.integrity_logger:
            self.integrity_logger.record_crossed_book(asset_id)

    # ── 재동기화 ──

    def schedule_resync(self, asset_id: str, reason: str) -> bool:
        """쿨다운 내 중복 요청은 무시. 예약되면 True"""
        now = self._clock()
        last = self._last_resync.get(asset_id)
        if last is not None and now - last < self.config.resync_cooldown:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"[재동기화] {asset_id} {reason} (이벤트 루프 없음, 예약 생략)")
            return False
        self._last_resync[asset_id] = now
        logger.info(f"[재동기화] {asset_id} {reason}, {self.config.resync_delay}초 후 오더북 재조회")
        task = loop.create_task(self._resync(asset_id))
        self._resync_tasks.add(task)
        task.add_done_callback(self._resync_tasks.discard)
        return True

    async def _resync(self, asset_id: str) -> None:
        await self._sleep(self.config.resync_delay)
        try:
            book = await self.api.get_orderbook(asset_id, allow_no_orderbook=True)
        except Exception as e:
            logger.error(f"[재동기화 실패] {asset_id}: {e}")
            return
        condition_id = self._asset_index.get(asset_id)
        if condition_id is None:
            return
        snap = self._entries[condition_id].tokens[asset_id]
        if book is None:
            snap.no_orderbook = True
            snap.orderbook = None
            return
        snap.no_orderbook = False
        snap.orderbook = book
        snap.best_bid = book.best_bid
        snap.best_ask = book.best_ask
        mid = midpoint_from(book.best_bid, book.best_ask)
        if mid is not None:
            snap.midpoint = mid
        # 재조회한 스냅샷 이후의 델타만 연속성 검사
        self._last_seq.pop(asset_id, None)
        logger.info(f"[재동기화] {asset_id} 오더북 재초기화 완료")

    # ── 신선도 ──

    def is_stale(self, condition_id: str, max_age_rest: float | None,
                 max_age_ws: float | None, now: float | None = None) -> bool:
        """두 소스 모두 max_age 내 갱신이 없으면 True (None 인 소스는 무시)"""
        entry = self._entries.get(condition_id)
        if entry is None:
            return True
        now = self._clock() if now is None else now
        rest_fresh = (max_age_rest is not None and entry.last_rest_update > 0
                      and now - entry.last_rest_update <= max_age_rest)
        ws_fresh = (max_age_ws is not None and entry.last_ws_update > 0
                    and now - entry.last_ws_update <= max_age_ws)
        return not (rest_fresh or ws_fresh)

    def ws_healthy(self, condition_id: str, now: float | None = None) -> bool:
        entry = self._entries.get(condition_id)
        if entry is None or entry.last_ws_update <= 0:
            return False
        now = self._clock() if now is None else now
        return now - entry.last_ws_update < self.config.ws_stale_seconds

    async def run_refresh_loop(self, condition_id: str, interval: float | None = None,
                               ws_healthy: Callable[[], bool] | None = None) -> None:
        """주기적 REST 갱신 루프

        WS 가 건강하고 마지막 REST 갱신이 reconcile_interval 이내면 건너뛴다.
        갱신 실패는 로그만 남기고 계속 진행한다.
        """
        interval = self.config.refresh_interval if interval is None else interval
        while True:
            entry = self._entries.get(condition_id)
            if entry is None:
                raise KeyError(condition_id)
            now = self._clock()
            healthy = ws_healthy() if ws_healthy is not None else self.ws_healthy(condition_id, now)
            if healthy and now - entry.last_rest_update < self.config.reconcile_interval:
                logger.debug(f"[스토어] {condition_id} WS 정상, REST 갱신 생략")
            else:
                try:
                    await self.refresh(
                        condition_id,
                        history=now - entry.last_history_update >= self.config.history_interval,
                        holders=now - entry.last_holders_update >= self.config.holders_interval,
                    )
                except RefreshError as e:
                    logger.error(f"[스토어] {condition_id} 갱신 실패: {e}")
            await self._sleep(interval)

    async def close(self) -> None:
        """진행 중인 재동기화 태스크 취소"""
        tasks = list(self._resync_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._resync_tasks.clear()
