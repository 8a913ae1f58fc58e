"""메인 애플리케이션 - 마켓 추적, WebSocket 피드, REST 갱신 루프 동시 실행"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

from pmdata.api import PolymarketApi
from pmdata.config import Config
from pmdata.http_client import HttpClient
from pmdata.integrity_logger import IntegrityLogger
from pmdata.market_store import MarketStore
from pmdata.models import ConnectionState, NormalizedMarket
from pmdata.ws_feed import WebSocketFeed

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(config: Config) -> None:
    """stdout + log_dir/pmdata.log 핸들러 설정"""
    Path(config.log_dir).mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )
    file_handler = logging.FileHandler(
        Path(config.log_dir) / "pmdata.log", encoding="utf-8"
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)


async def resolve_markets(api: PolymarketApi, config: Config) -> list[NormalizedMarket]:
    """추적 대상 결정: 설정된 condition_ids, 없으면 최신 활성 마켓 radar_limit 개"""
    if not config.condition_ids:
        markets = await api.fetch_markets(limit=config.radar_limit)
        return markets[:config.radar_limit]

    markets = []
    for cid in config.condition_ids:
        market = await api.fetch_market_by_condition_id(cid)
        if market is None:
            logger.warning(f"[초기화] 마켓을 찾을 수 없음: {cid}")
            continue
        markets.append(market)
    return markets


def log_staleness(store: MarketStore, config: Config) -> list[str]:
    """신선도 임계값을 넘긴 마켓 로그. 오래된 condition_id 목록 반환"""
    stale = [
        cid for cid in store.condition_ids()
        if store.is_stale(cid, config.rest_stale_seconds, config.ws_stale_seconds)
    ]
    for cid in stale:
        entry = store.get(cid)
        err = entry.last_error if entry else None
        logger.warning(f"[신선도] {cid} 데이터 오래됨 (last_error={err})")
    return stale


async def main(config_path: str = "config.yaml") -> None:
    """모든 모듈 초기화 및 asyncio.gather로 동시 실행"""
    config = Config.from_yaml(config_path)
    setup_logging(config)

    integrity_logger = IntegrityLogger(config.log_dir)
    http = HttpClient.from_config(config)
    api = PolymarketApi(http, config)
    store = MarketStore(api, config, integrity_logger)

    logger.info("=== 폴리마켓 시세 수집 시작 ===")
    try:
        markets = await resolve_markets(api, config)
    except Exception as e:
        logger.error(f"[초기화] 마켓 목록 조회 실패: {e}")
        await http.close()
        return
    if not markets:
        logger.error("[초기화] 추적할 마켓 없음")
        await http.close()
        return
    for market in markets:
        store.track(market)
    logger.info(f"마켓: {store.condition_ids()}")
    logger.info(f"자산: {len(store.asset_ids())}개, 갱신 주기: {config.refresh_interval}초")

    feed: WebSocketFeed | None = None
    if config.use_ws:
        feed = WebSocketFeed.from_config(
            config, store.asset_ids(), store.apply_event,
            integrity_logger=integrity_logger,
        )

    def feed_healthy(cid: str) -> bool:
        if feed is None or feed.state is not ConnectionState.CONNECTED:
            return False
        return store.ws_healthy(cid)

    async def periodic_log():
        while True:
            await asyncio.sleep(config.stats_interval)
            log_staleness(store, config)
            await integrity_logger.write_periodic_log()

    tasks = [periodic_log()]
    for cid in store.condition_ids():
        tasks.append(store.run_refresh_loop(
            cid, config.refresh_interval, ws_healthy=lambda c=cid: feed_healthy(c),
        ))
    if feed is not None:
        tasks.append(feed.run())

    # graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler():
        logger.info("종료 신호 수신, 정리 중...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    started = time.time()
    gathered = asyncio.gather(*tasks, return_exceptions=True)
    waiter = asyncio.create_task(shutdown_event.wait())

    await asyncio.wait([waiter, gathered], return_when=asyncio.FIRST_COMPLETED)

    if feed is not None:
        await feed.close()
    gathered.cancel()
    waiter.cancel()
    try:
        await gathered
    except asyncio.CancelledError:
        pass
    await store.close()
    await http.close()
    try:
        await integrity_logger.write_periodic_log()
    except OSError as e:
        logger.error(f"마지막 통계 기록 실패: {e}")

    logger.info(f"=== 시스템 종료 (가동 {time.time() - started:.0f}초) ===")


def run() -> None:
    config_file = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    asyncio.run(main(config_file))


if __name__ == "__main__":
    run()
