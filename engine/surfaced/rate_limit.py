"""固定ウィンドウのレート制限.

カウンタは共有ストア側に置く（プロセスごとのメモリには持たない）ので、
複数プロセスで動かしても同じ上限が効く。
キー: {prefix}:{identifier}:{ウィンドウ開始の epoch 秒}
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from surfaced.config import ADMIN_RATE_LIMIT, PUBLIC_RATE_LIMIT, RATE_LIMIT_WINDOW_SECONDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int  # ウィンドウ終了の epoch 秒


class FixedWindowRateLimiter:
    def __init__(self, store, limit: int, window_seconds: int, prefix: str) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    def check(self, identifier: str, now: float | None = None) -> RateLimitResult:
        """identifier のリクエストを 1 回数え、許可するかを返す.

        ストアに到達できない場合は拒否する。
        """
        now = time.time() if now is None else now
        window_start = int(now // self.window_seconds) * self.window_seconds
        reset = window_start + self.window_seconds
        key = f"{self.prefix}:{identifier}:{window_start}"

        try:
            count = self.store.increment_counter(key, self.window_seconds)
        except Exception as e:
            logger.error("レート制限カウンタ更新失敗: key=%s, error=%s", key, e)
            return RateLimitResult(success=False, limit=self.limit, remaining=0, reset=reset)

        return RateLimitResult(
            success=count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset=reset,
        )


def public_rate_limiter(store) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(store, PUBLIC_RATE_LIMIT, RATE_LIMIT_WINDOW_SECONDS, "ratelimit:public")


def admin_rate_limiter(store) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(store, ADMIN_RATE_LIMIT, RATE_LIMIT_WINDOW_SECONDS, "ratelimit:admin")
