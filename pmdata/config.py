"""시스템 설정 모듈 - config.yaml 로드 및 Config 데이터클래스"""

from dataclasses import dataclass, field, asdict
from pathlib import Path

import yaml


RATE_LIMIT_WINDOW = 10.0  # 모든 레이트리밋 규칙 공통 윈도우 (초)

# 경로 prefix 단위 규칙 (긴 prefix 우선)
DEFAULT_PATH_LIMITS: list[dict] = [
    {"host": "clob.polymarket.com", "path": "/book", "capacity": 1500},
    {"host": "clob.polymarket.com", "path": "/books", "capacity": 500},
    {"host": "clob.polymarket.com", "path": "/price", "capacity": 1500},
    {"host": "clob.polymarket.com", "path": "/prices", "capacity": 500},
    {"host": "clob.polymarket.com", "path": "/midpoint", "capacity": 1500},
    {"host": "clob.polymarket.com", "path": "/prices-history", "capacity": 1000},
    {"host": "clob.polymarket.com", "path": "/price_history", "capacity": 1000},
    {"host": "clob.polymarket.com", "path": "/data/trades", "capacity": 500},
    {"host": "gamma-api.polymarket.com", "path": "/events", "capacity": 500},
    {"host": "gamma-api.polymarket.com", "path": "/markets", "capacity": 300},
    {"host": "data-api.polymarket.com", "path": "/positions", "capacity": 150},
    {"host": "data-api.polymarket.com", "path": "/trades", "capacity": 200},
    {"host": "data-api.polymarket.com", "path": "/closed-positions", "capacity": 150},
]

# 호스트 단위 fallback 규칙
DEFAULT_HOST_LIMITS: list[dict] = [
    {"host": "clob.polymarket.com", "capacity": 9000},
    {"host": "gamma-api.polymarket.com", "capacity": 4000},
    {"host": "data-api.polymarket.com", "capacity": 1000},
]


@dataclass
class Config:
    """시스템 설정 (config.yaml에서 로드)"""
    # 업스트림 엔드포인트
    gamma_base: str = "https://gamma-api.polymarket.com"
    clob_rest_base: str = "https://clob.polymarket.com"
    clob_ws_base: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    data_api_base: str = "https://data-api.polymarket.com"

    # 추적 대상
    condition_ids: list[str] = field(default_factory=list)
    radar_limit: int = 5

    # REST 전송
    rest_timeout: float = 10.0
    max_retries: int = 2
    retry_base_delay: float = 0.2
    retry_max_delay: float = 30.0
    rate_limit_window: float = RATE_LIMIT_WINDOW
    path_limits: list[dict] = field(default_factory=lambda: [dict(r) for r in DEFAULT_PATH_LIMITS])
    host_limits: list[dict] = field(default_factory=lambda: [dict(r) for r in DEFAULT_HOST_LIMITS])

    # WebSocket
    use_ws: bool = True
    ws_reconnect_base: float = 0.5
    ws_reconnect_cap: float = 30.0
    ws_reconnect_jitter: float = 0.2
    ws_grace_period: float = 5.0
    ws_ping_interval: float = 20.0
    ws_open_timeout: float = 10.0

    # 갱신 주기 (초)
    refresh_interval: float = 3.0
    history_interval: float = 30.0
    holders_interval: float = 60.0
    reconcile_interval: float = 60.0
    stats_interval: float = 300.0

    # 신선도 임계값 (초)
    ws_stale_seconds: float = 15.0
    rest_stale_seconds: float = 20.0

    # 재동기화
    resync_cooldown: float = 15.0
    resync_delay: float = 1.2

    # 조회 파라미터
    history_range: str = "1d"
    history_fidelity: int = 30
    holders_limit: int = 8
    orderbook_depth: int = 10

    log_dir: str = "./logs"
    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """YAML 파일에서 Config 객체 생성"""
        p = Path(path)
        if not p.exists():
            return cls()
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def to_yaml(self, path: str) -> None:
        """Config 객체를 YAML 파일로 저장"""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(asdict(self), f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> dict:
        """Config를 딕셔너리로 변환"""
        return asdict(self)
