"""응답 정규화 모듈 - 이질적인 REST/WS 페이로드를 내부 모델로 변환

모든 함수는 순수 함수이며 잘못된 입력에 예외를 던지지 않는다.
필수 필드가 없는 레코드는 None 으로 버려지고, 숫자로 해석할 수 없는
값은 None 이 된다.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Iterable, Mapping

from pmdata.models import (
    EventType, Holder, NormalizedMarket, OrderbookLevel, OrderbookState,
    PriceUpdateEvent, Trade,
)

logger = logging.getLogger(__name__)


# ── 필드 별칭 테이블 (앞쪽 우선) ──

MARKET_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "condition_id": ("conditionId", "condition_id", "conditionID"),
    "market_id": ("id", "marketId", "market_id"),
    "question": ("question", "title"),
    "slug": ("slug", "market_slug"),
    "outcomes": ("outcomes", "outcome"),
    "token_ids": ("clobTokenIds", "clob_token_ids"),
    "volume_24h": ("volume24hr", "volume24h", "volume24hrUsd", "volumeUSD"),
    "price_change_24h": ("priceChange24hr", "price_change_24hr", "priceChange24h"),
    "best_bid": ("bestBid", "best_bid"),
    "best_ask": ("bestAsk", "best_ask"),
}

EVENT_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "event_id": ("id", "eventId", "event_id"),
    "title": ("title", "question"),
}

TOKEN_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "token_id": ("token_id", "tokenId", "id"),
    "outcome": ("outcome", "name"),
}

PRICE_ALIASES = ("price", "best_price", "value")
MIDPOINT_ALIASES = ("midpoint", "midpoint_price", "mid", "price", "value")
HISTORY_CONTAINER_ALIASES = ("history", "prices", "data")
HISTORY_POINT_ALIASES = ("p", "price", "value", "close")

LEVEL_PRICE_ALIASES = ("price", "p", "rate")
LEVEL_SIZE_ALIASES = ("size", "s", "amount", "quantity")
BOOK_BID_ALIASES = ("bids", "buys")
BOOK_ASK_ALIASES = ("asks", "sells")

HOLDER_WALLET_ALIASES = ("proxyWallet", "proxy_wallet", "wallet", "address")
HOLDER_AMOUNT_ALIASES = ("amount", "shares", "size", "balance")
HOLDER_NAME_ALIASES = ("name", "pseudonym", "displayUsernamePublic")

WS_ASSET_ALIASES = ("asset_id", "token_id", "assetId")
WS_TIMESTAMP_ALIASES = ("timestamp", "ts", "time")
WS_SEQUENCE_ALIASES = ("sequence", "seq")


# ── 기본 헬퍼 ──

def resolve_field(raw: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    """별칭 순서대로 첫 번째 non-null 값 반환"""
    for key in aliases:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def as_number(value: Any) -> float | None:
    """숫자 또는 숫자 문자열 → float. 해석 불가/NaN/inf → None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def as_int(value: Any) -> int | None:
    num = as_number(value)
    if num is None or num != int(num):
        return None
    return int(num)


def as_str(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        text = value.strip()
        return text or None
    return None


def parse_json_array(value: Any) -> list | None:
    """리스트 또는 JSON 배열 문자열 → list. 그 외 None"""
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if not text.startswith("["):
            return None
        try:
            parsed = json.loads(text)
        except ValueError:
            return None
        return parsed if isinstance(parsed, list) else None
    return None


def default_outcomes(count: int) -> list[str]:
    """아웃컴 이름이 없을 때 기본값 (2개면 YES/NO)"""
    if count == 2:
        return ["YES", "NO"]
    return [f"OUTCOME_{i + 1}" for i in range(count)]


def _string_list(value: Any) -> list[str] | None:
    items = parse_json_array(value)
    if items is None:
        return None
    out = []
    for item in items:
        s = as_str(item)
        if s is None:
            return None
        out.append(s)
    return out


# ── 마켓 ──

def _tokens_from_nested(raw: Mapping[str, Any]) -> tuple[list[str], list[str | None]] | None:
    tokens = raw.get("tokens")
    if not isinstance(tokens, list) or not tokens:
        return None
    ids: list[str] = []
    names: list[str | None] = []
    for tok in tokens:
        if not isinstance(tok, Mapping):
            continue
        token_id = as_str(resolve_field(tok, TOKEN_FIELD_ALIASES["token_id"]))
        if token_id is None:
            continue
        ids.append(token_id)
        names.append(as_str(resolve_field(tok, TOKEN_FIELD_ALIASES["outcome"])))
    if not ids:
        return None
    return ids, names


def _outcomes_from_nested(raw: Mapping[str, Any], token_ids: list[str]) -> list[str] | None:
    """최상위 토큰 id 순서대로 tokens[].outcome 이름 매칭"""
    nested = _tokens_from_nested(raw)
    if nested is None:
        return None
    by_id = dict(zip(*nested))
    names = [by_id.get(tid) for tid in token_ids]
    if all(n is not None for n in names):
        return [n for n in names if n is not None]
    # id 가 어긋나면 개수가 같을 때만 순서대로 사용
    ids, nested_names = nested
    if len(ids) == len(token_ids) and all(n is not None for n in nested_names):
        return [n for n in nested_names if n is not None]
    return None


def normalize_market(raw: Any, event: Mapping[str, Any] | None = None) -> NormalizedMarket | None:
    """원시 마켓 레코드 → NormalizedMarket. condition id 나 토큰이 없으면 None"""
    if not isinstance(raw, Mapping):
        return None

    condition_id = as_str(resolve_field(raw, MARKET_FIELD_ALIASES["condition_id"]))
    if condition_id is None:
        return None

    token_ids = _string_list(resolve_field(raw, MARKET_FIELD_ALIASES["token_ids"]))
    outcomes = _string_list(resolve_field(raw, MARKET_FIELD_ALIASES["outcomes"]))

    if not token_ids:
        nested = _tokens_from_nested(raw)
        if nested is None:
            return None
        token_ids, names = nested
        if all(n is not None for n in names):
            outcomes = [n for n in names if n is not None]
    elif not outcomes:
        outcomes = _outcomes_from_nested(raw, token_ids)

    if not outcomes or len(outcomes) != len(token_ids):
        outcomes = default_outcomes(len(token_ids))

    event_id = event_title = event_slug = None
    if isinstance(event, Mapping):
        event_id = as_str(resolve_field(event, EVENT_FIELD_ALIASES["event_id"]))
        event_title = as_str(resolve_field(event, EVENT_FIELD_ALIASES["title"]))
        event_slug = as_str(event.get("slug"))

    question = as_str(resolve_field(raw, MARKET_FIELD_ALIASES["question"])) or event_title
    slug = as_str(resolve_field(raw, MARKET_FIELD_ALIASES["slug"])) or event_slug

    return NormalizedMarket(
        condition_id=condition_id,
        outcomes=tuple(outcomes),
        token_ids=tuple(token_ids),
        market_id=as_str(resolve_field(raw, MARKET_FIELD_ALIASES["market_id"])),
        question=question,
        slug=slug,
        event_id=event_id,
        event_title=event_title,
        best_bid=as_number(resolve_field(raw, MARKET_FIELD_ALIASES["best_bid"])),
        best_ask=as_number(resolve_field(raw, MARKET_FIELD_ALIASES["best_ask"])),
        volume_24h=as_number(resolve_field(raw, MARKET_FIELD_ALIASES["volume_24h"])),
        price_change_24h=as_number(resolve_field(raw, MARKET_FIELD_ALIASES["price_change_24h"])),
    )


def normalize_markets(raws: Any) -> list[NormalizedMarket]:
    """마켓 목록 정규화 (condition_id 중복 제거, 입력 순서 유지)"""
    if isinstance(raws, Mapping):
        raws = resolve_field(raws, ("markets", "data"))
    if not isinstance(raws, list):
        return []
    seen: set[str] = set()
    out: list[NormalizedMarket] = []
    for raw in raws:
        market = normalize_market(raw)
        if market is None or market.condition_id in seen:
            continue
        seen.add(market.condition_id)
        out.append(market)
    return out


def normalize_events(raws: Any) -> list[NormalizedMarket]:
    """Gamma /events 응답의 하위 마켓 평탄화"""
    if isinstance(raws, Mapping):
        raws = resolve_field(raws, ("events", "data"))
    if not isinstance(raws, list):
        return []
    seen: set[str] = set()
    out: list[NormalizedMarket] = []
    for event in raws:
        if not isinstance(event, Mapping):
            continue
        markets = event.get("markets")
        if not isinstance(markets, list):
            continue
        for raw in markets:
            market = normalize_market(raw, event)
            if market is None or market.condition_id in seen:
                continue
            seen.add(market.condition_id)
            out.append(market)
    return out


# ── 오더북 ──

def _parse_level(raw: Any) -> OrderbookLevel | None:
    if isinstance(raw, Mapping):
        price = as_number(resolve_field(raw, LEVEL_PRICE_ALIASES))
        size = as_number(resolve_field(raw, LEVEL_SIZE_ALIASES))
    elif isinstance(raw, (list, tuple)) and len(raw) >= 2:
        price = as_number(raw[0])
        size = as_number(raw[1])
    else:
        return None
    if price is None or size is None or not 0 < price < 1 or size <= 0:
        return None
    return OrderbookLevel(price=price, size=size)


def normalize_levels(raws: Any, side: str) -> list[OrderbookLevel]:
    """호가 레벨 정규화. side='bid' 면 가격 내림차순, 'ask' 면 오름차순"""
    if not isinstance(raws, list):
        return []
    by_price: dict[float, OrderbookLevel] = {}
    for raw in raws:
        level = _parse_level(raw)
        if level is not None:
            by_price[level.price] = level
    return sort_levels(by_price.values(), side)


def sort_levels(levels: Iterable[OrderbookLevel], side: str) -> list[OrderbookLevel]:
    return sorted(levels, key=lambda lv: lv.price, reverse=(side == "bid"))


def normalize_orderbook(raw: Any) -> OrderbookState | None:
    """CLOB /book 응답 → OrderbookState"""
    if not isinstance(raw, Mapping):
        return None
    neg_risk = raw.get("neg_risk", raw.get("negRisk"))
    book = OrderbookState(
        bids=normalize_levels(resolve_field(raw, BOOK_BID_ALIASES), "bid"),
        asks=normalize_levels(resolve_field(raw, BOOK_ASK_ALIASES), "ask"),
        tick_size=as_number(resolve_field(raw, ("tick_size", "tickSize"))),
        min_order_size=as_number(resolve_field(raw, ("min_order_size", "minOrderSize"))),
        neg_risk=neg_risk if isinstance(neg_risk, bool) else None,
    )
    if book.is_crossed:
        logger.warning(
            f"[오더북] 교차 호가 감지 bid={book.best_bid} ask={book.best_ask} "
            f"asset={raw.get('asset_id')}"
        )
    return book


# ── 가격 ──

def extract_price(raw: Any) -> float | None:
    """/price 응답 → float"""
    if isinstance(raw, Mapping):
        return as_number(resolve_field(raw, PRICE_ALIASES))
    return as_number(raw)


def extract_midpoint(raw: Any) -> float | None:
    """/midpoint 응답 → float"""
    if isinstance(raw, Mapping):
        return as_number(resolve_field(raw, MIDPOINT_ALIASES))
    return as_number(raw)


def extract_history(raw: Any) -> list[float]:
    """가격 히스토리 → 숫자 리스트 (해석 불가 포인트는 건너뜀)"""
    points = raw
    if isinstance(raw, Mapping):
        points = resolve_field(raw, HISTORY_CONTAINER_ALIASES)
    if not isinstance(points, list):
        return []
    out: list[float] = []
    for point in points:
        if isinstance(point, Mapping):
            value = as_number(resolve_field(point, HISTORY_POINT_ALIASES))
        else:
            value = as_number(point)
        if value is not None:
            out.append(value)
    return out


# ── 홀더/체결 ──

def _normalize_holder(raw: Any, token_id: str | None) -> Holder | None:
    if not isinstance(raw, Mapping):
        return None
    wallet = as_str(resolve_field(raw, HOLDER_WALLET_ALIASES))
    amount = as_number(resolve_field(raw, HOLDER_AMOUNT_ALIASES))
    if wallet is None or amount is None:
        return None
    return Holder(
        wallet=wallet,
        amount=amount,
        name=as_str(resolve_field(raw, HOLDER_NAME_ALIASES)),
        token_id=token_id or as_str(resolve_field(raw, ("asset", "token", "token_id"))),
        outcome_index=as_int(resolve_field(raw, ("outcomeIndex", "outcome_index"))),
    )


def normalize_holders(raw: Any) -> list[Holder]:
    """Data API /holders 응답 → Holder 리스트 (amount 내림차순)

    응답은 [{token, holders: [...]}, ...] 형태이거나 홀더 레코드의 평면 리스트.
    """
    if isinstance(raw, Mapping):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    out: list[Holder] = []
    for item in raw:
        if isinstance(item, Mapping) and isinstance(item.get("holders"), list):
            token_id = as_str(item.get("token"))
            for h in item["holders"]:
                holder = _normalize_holder(h, token_id)
                if holder is not None:
                    out.append(holder)
        else:
            holder = _normalize_holder(item, None)
            if holder is not None:
                out.append(holder)
    out.sort(key=lambda h: h.amount, reverse=True)
    return out


def normalize_trades(raw: Any) -> list[Trade]:
    """Data API /trades 응답 → Trade 리스트"""
    if isinstance(raw, Mapping):
        raw = resolve_field(raw, ("data", "trades"))
    if not isinstance(raw, list):
        return []
    out: list[Trade] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        price = as_number(resolve_field(item, ("price", "p")))
        size = as_number(resolve_field(item, ("size", "s", "amount", "quantity")))
        if price is None or size is None:
            continue
        side = as_str(item.get("side"))
        out.append(Trade(
            price=price,
            size=size,
            side=side.upper() if side else None,
            asset_id=as_str(resolve_field(item, ("asset", "asset_id", "token_id"))),
            outcome=as_str(item.get("outcome")),
            timestamp=as_number(resolve_field(item, ("timestamp", "match_time", "ts"))),
        ))
    return out


# ── WebSocket 메시지 ──

def is_ping(data: Any) -> bool:
    """서버 ping/heartbeat 제어 메시지 여부"""
    if not isinstance(data, Mapping):
        return False
    kind = str(data.get("type") or data.get("event_type") or "").lower()
    return kind in ("ping", "heartbeat")


def _event_type(data: Mapping[str, Any]) -> EventType | None:
    raw = data.get("event_type") or data.get("type")
    if not isinstance(raw, str):
        return None
    try:
        return EventType(raw.lower())
    except ValueError:
        return None


def _base_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "hash": as_str(data.get("hash")),
        "sequence": as_int(resolve_field(data, WS_SEQUENCE_ALIASES)),
        "timestamp": as_number(resolve_field(data, WS_TIMESTAMP_ALIASES)),
    }


def _parse_single(data: Mapping[str, Any], recv_time: float) -> list[PriceUpdateEvent]:
    etype = _event_type(data)
    if etype is None:
        return []

    asset_id = as_str(resolve_field(data, WS_ASSET_ALIASES))
    base = _base_fields(data)

    if etype is EventType.PRICE_CHANGE:
        changes = resolve_field(data, ("price_changes", "changes"))
        if isinstance(changes, list) and changes:
            return _parse_price_changes(data, changes, asset_id, base, recv_time)
        # 변경 목록 없는 price_change → 최우선 호가 갱신으로 취급
        if asset_id is None:
            return []
        return [PriceUpdateEvent(
            asset_id=asset_id,
            event_type=EventType.BEST_BID_ASK,
            payload=dict(data),
            recv_time=recv_time,
            best_bid=as_number(data.get("best_bid")),
            best_ask=as_number(data.get("best_ask")),
            **base,
        )]

    if asset_id is None:
        return []

    event = PriceUpdateEvent(
        asset_id=asset_id, event_type=etype, payload=dict(data), recv_time=recv_time, **base,
    )
    if etype is EventType.BOOK:
        event.book = normalize_orderbook(data)
    elif etype is EventType.BEST_BID_ASK:
        event.best_bid = as_number(data.get("best_bid"))
        event.best_ask = as_number(data.get("best_ask"))
    elif etype is EventType.TRADE:
        event.last_trade = as_number(data.get("price"))
        event.price = event.last_trade
        event.size = as_number(data.get("size"))
        side = as_str(data.get("side"))
        event.side = side.upper() if side else None
    elif etype is EventType.TICK_SIZE_CHANGE:
        event.tick_size = as_number(resolve_field(data, ("new_tick_size", "tick_size")))
    return [event]


def _parse_price_changes(data: Mapping[str, Any], changes: list, default_asset: str | None,
                         base: dict[str, Any], recv_time: float) -> list[PriceUpdateEvent]:
    out: list[PriceUpdateEvent] = []
    for change in changes:
        if not isinstance(change, Mapping):
            continue
        asset_id = as_str(resolve_field(change, WS_ASSET_ALIASES)) or default_asset
        if asset_id is None:
            continue
        side = as_str(resolve_field(change, ("side", "action")))
        sequence = as_int(resolve_field(change, WS_SEQUENCE_ALIASES))
        timestamp = as_number(resolve_field(change, WS_TIMESTAMP_ALIASES))
        # 메시지 최상위 best_bid/best_ask 우선, 없으면 변경 항목 값
        best_bid = as_number(data.get("best_bid"))
        best_ask = as_number(data.get("best_ask"))
        out.append(PriceUpdateEvent(
            asset_id=asset_id,
            event_type=EventType.PRICE_CHANGE,
            payload=dict(data),
            recv_time=recv_time,
            side="SELL" if side and side.upper() == "SELL" else "BUY",
            price=as_number(resolve_field(change, ("price", "p"))),
            size=as_number(resolve_field(change, ("size", "quantity", "amount"))),
            best_bid=best_bid if best_bid is not None else as_number(change.get("best_bid")),
            best_ask=best_ask if best_ask is not None else as_number(change.get("best_ask")),
            hash=as_str(change.get("hash")) or base["hash"],
            sequence=sequence if sequence is not None else base["sequence"],
            timestamp=timestamp if timestamp is not None else base["timestamp"],
        ))
    return out


def parse_ws_message(data: Any, recv_time: float) -> list[PriceUpdateEvent]:
    """디코딩된 WS 메시지 → PriceUpdateEvent 리스트

    배열 메시지는 평탄화되고, 알 수 없는 이벤트 타입이나 asset id 없는
    레코드는 버려진다.
    """
    if isinstance(data, list):
        out: list[PriceUpdateEvent] = []
        for item in data:
            if isinstance(item, Mapping):
                out.extend(_parse_single(item, recv_time))
        return out
    if isinstance(data, Mapping):
        return _parse_single(data, recv_time)
    return []
