"""데이터 무결성 로깅 모듈 - 시퀀스 갭, 재연결, 파싱 실패, 갱신 통계"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class IntegrityLogger:
    """데이터 무결성 로깅"""

    MAX_GAP_BUFFER = 10000  # 갭 기록 최대 보관 수
    MAX_PARSE_ERROR_BUFFER = 100  # 파싱 실패 사유 최대 보관 수

    def __init__(self, log_dir: Path | str):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._gaps: list[dict] = []
        self._reconnects: list[dict] = []
        self._parse_errors: int = 0
        self._parse_error_reasons: list[dict] = []
        self._crossed_books: dict[str, int] = defaultdict(int)
        self._refresh_ok: dict[str, int] = defaultdict(int)
        self._refresh_failed: dict[str, int] = defaultdict(int)
        self._message_counts: dict[str, int] = defaultdict(int)

    def record_gap(self, asset_id: str, expected: float | None, actual: float | None,
                   timestamp: float, kind: str = "sequence") -> None:
        """시퀀스 갭 / 타임스탬프 역전 기록"""
        if len(self._gaps) >= self.MAX_GAP_BUFFER:
            self._gaps = self._gaps[-self.MAX_GAP_BUFFER // 2:]
        self._gaps.append({
            "timestamp": timestamp,
            "asset_id": asset_id,
            "kind": kind,
            "expected": expected,
            "actual": actual,
        })
        logger.warning(f"[갭] {asset_id} {kind} expected={expected} actual={actual}")

    def record_reconnect(self, timestamp: float, reason: str) -> None:
        """재연결 이벤트 기록"""
        self._reconnects.append({
            "timestamp": timestamp,
            "reason": reason,
        })

    def record_parse_error(self, reason: str) -> None:
        """파싱 실패 카운트 + 최근 사유 보관"""
        self._parse_errors += 1
        if len(self._parse_error_reasons) >= self.MAX_PARSE_ERROR_BUFFER:
            self._parse_error_reasons = self._parse_error_reasons[-self.MAX_PARSE_ERROR_BUFFER // 2:]
        self._parse_error_reasons.append({
            "timestamp": datetime.now(timezone.utc).timestamp(),
            "reason": reason,
        })

    def record_crossed_book(self, asset_id: str) -> None:
        self._crossed_books[asset_id] += 1

    def record_refresh(self, condition_id: str, ok: bool) -> None:
        """REST 갱신 성공/실패 카운트"""
        if ok:
            self._refresh_ok[condition_id] += 1
        else:
            self._refresh_failed[condition_id] += 1

    def increment_message_count(self, asset_id: str) -> None:
        """메시지 수신 카운트 증가"""
        self._message_counts[asset_id] += 1

    def get_periodic_stats(self) -> dict:
        """현재 주기 통계 반환"""
        now = datetime.now(timezone.utc)
        return {
            "timestamp": now.isoformat(),
            "gaps": list(self._gaps),
            "gap_count": len(self._gaps),
            "reconnect_count": len(self._reconnects),
            "reconnects": list(self._reconnects),
            "parse_errors": self._parse_errors,
            "parse_error_reasons": list(self._parse_error_reasons),
            "crossed_books": dict(self._crossed_books),
            "refresh_ok": dict(self._refresh_ok),
            "refresh_failed": dict(self._refresh_failed),
            "message_counts": dict(self._message_counts),
        }

    async def write_periodic_log(self) -> Path:
        """주기적 통계 JSON 로그 작성 후 카운터 리셋"""
        stats = self.get_periodic_stats()
        now = datetime.now(timezone.utc)
        log_file = self.log_dir / f"stats_{now.strftime('%Y%m%d_%H')}.json"
        with open(log_file, "w") as f:
            json.dump(stats, f, indent=2, default=str)
        self._gaps.clear()
        self._reconnects.clear()
        self._parse_errors = 0
        self._parse_error_reasons.clear()
        self._crossed_books.clear()
        self._refresh_ok.clear()
        self._refresh_failed.clear()
        self._message_counts.clear()
        logger.info(f"[로그] {log_file}")
        return log_file
