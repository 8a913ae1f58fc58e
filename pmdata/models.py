"""데이터 모델 정의 - 폴리마켓 REST/WebSocket 정규화 엔티티 및 내부 상태"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ── 레이트리밋 관련 ──

@dataclass(frozen=True)
class RateLimitRule:
    """레이트리밋 규칙 (정적 설정에서 로드)"""
    key: str                     # host+path 또는 host
    capacity: int                # 윈도우당 허용 호출 수
    window: float                # 윈도우 길이 (초)

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        if self.window <= 0:
            raise ValueError(f"window must be > 0, got {self.window}")


@dataclass
class TokenBucket:
    """키별 토큰 버킷 상태 (RateLimiter 전용)"""
    tokens: int
    reset_at: float              # 리필 시각 (monotonic 초)


# ── REST 요청 ──

@dataclass
class FetchRequest:
    """단일 REST 호출 요청"""
    url: str
    method: str = "GET"
    params: dict[str, Any] | None = None
    body: Any = None
    headers: dict[str, str] | None = None
    timeout: float = 10.0
    max_retries: int = 2


# ── 마켓 ──

@dataclass(frozen=True)
class NormalizedMarket:
    """정규화된 마켓 (condition_id 기준 유일)"""
    condition_id: str
    outcomes: tuple[str, ...]
    token_ids: tuple[str, ...]   # outcomes와 같은 순서
    market_id: str | None = None
    question: str | None = None
    slug: str | None = None
    event_id: str | None = None
    event_title: str | None = None
    best_bid: float | None = None
    best_ask: float | None = None
    volume_24h: float | None = None
    price_change_24h: float | None = None


# ── 오더북 ──

@dataclass(frozen=True)
class OrderbookLevel:
    price: float
    size: float


@dataclass
class OrderbookState:
    """토큰별 오더북 (bids 내림차순, asks 오름차순)"""
    bids: list[OrderbookLevel] = field(default_factory=list)
    asks: list[OrderbookLevel] = field(default_factory=list)
    tick_size: float | None = None
    min_order_size: float | None = None
    neg_risk: bool | None = None

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None

    @property
    def is_crossed(self) -> bool:
        """최우선 매수호가 >= 최우선 매도호가 여부"""
        if not self.bids or not self.asks:
            return False
        return self.bids[0].price >= self.asks[0].price


# ── 홀더/체결 (Data API) ──

@dataclass(frozen=True)
class Holder:
    wallet: str
    amount: float
    name: str | None = None
    token_id: str | None = None
    outcome_index: int | None = None


@dataclass(frozen=True)
class Trade:
    price: float
    size: float
    side: str | None = None
    asset_id: str | None = None
    outcome: str | None = None
    timestamp: float | None = None


# ── WebSocket 이벤트 ──

class EventType(str, Enum):
    BOOK = "book"
    PRICE_CHANGE = "price_change"
    TRADE = "last_trade_price"
    BEST_BID_ASK = "best_bid_ask"
    TICK_SIZE_CHANGE = "tick_size_change"


@dataclass
class PriceUpdateEvent:
    """WebSocket 수신 이벤트 (asset 단위로 분해됨)"""
    asset_id: str
    event_type: EventType
    payload: dict[str, Any]      # 원본 메시지
    recv_time: float             # 로컬 수신 시각 (unix timestamp)
    book: OrderbookState | None = None
    side: str | None = None      # BUY / SELL
    price: float | None = None
    size: float | None = None
    best_bid: float | None = None
    best_ask: float | None = None
    last_trade: float | None = None
    tick_size: float | None = None
    hash: str | None = None
    sequence: int | None = None
    timestamp: float | None = None   # 거래소 타임스탬프 (ms)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKING_OFF = "backing_off"
    CLOSED = "closed"


# ── 스토어 ──

@dataclass
class TokenSnapshot:
    """아웃컴 토큰별 시세 상태"""
    token_id: str
    orderbook: OrderbookState | None = None
    best_bid: float | None = None
    best_ask: float | None = None
    midpoint: float | None = None
    last_trade: float | None = None
    history: list[float] = field(default_factory=list)
    no_orderbook: bool = False


@dataclass
class MarketEntry:
    """MarketStore 항목 - REST 스냅샷과 WS 델타가 병합된 마켓 상태"""
    market: NormalizedMarket
    tokens: dict[str, TokenSnapshot] = field(default_factory=dict)
    holders: list[Holder] = field(default_factory=list)
    last_rest_update: float = 0.0
    last_ws_update: float = 0.0
    last_history_update: float = 0.0
    last_holders_update: float = 0.0
    last_error: Exception | None = None

    @property
    def orderbook(self) -> OrderbookState | None:
        """첫 번째 아웃컴의 오더북"""
        if not self.market.token_ids:
            return None
        snap = self.tokens.get(self.market.token_ids[0])
        return snap.orderbook if snap else None
