"""プラン別の上限値とクォータ計算.

クォータは専用カウンタを持たず、期間内のレコード数を数えて求める。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from surfaced.errors import ValidationError


@dataclass(frozen=True)
class PlanLimits:
    products_audited: int | None  # None = 無制限
    visibility_checks_per_month: int
    optimizations_per_month: int
    platforms_tracked: int
    competitors_tracked: int
    history_days: int


PLAN_LIMITS: dict[str, PlanLimits] = {
    "FREE": PlanLimits(
        products_audited=10,
        visibility_checks_per_month=3,
        optimizations_per_month=3,
        platforms_tracked=1,
        competitors_tracked=0,
        history_days=7,
    ),
    "BASIC": PlanLimits(
        products_audited=100,
        visibility_checks_per_month=10,
        optimizations_per_month=20,
        platforms_tracked=2,
        competitors_tracked=1,
        history_days=30,
    ),
    "PLUS": PlanLimits(
        products_audited=500,
        visibility_checks_per_month=50,
        optimizations_per_month=100,
        platforms_tracked=4,
        competitors_tracked=3,
        history_days=90,
    ),
    "PREMIUM": PlanLimits(
        products_audited=None,
        visibility_checks_per_month=200,
        optimizations_per_month=500,
        platforms_tracked=5,
        competitors_tracked=10,
        history_days=365,
    ),
}


def get_plan_limits(plan: str) -> PlanLimits:
    try:
        return PLAN_LIMITS[plan.upper()]
    except (KeyError, AttributeError):
        raise ValidationError(f"Unknown plan: {plan}", plan=plan) from None


def month_start(now: datetime | None = None) -> datetime:
    """UTC の当月 1 日 0 時."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class QuotaUsage:
    used: int
    limit: int | None  # None = 無制限

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.used >= self.limit

    def allows(self, amount: int) -> bool:
        """amount 件を追加しても上限を超えないか."""
        if self.limit is None:
            return True
        return self.used + amount <= self.limit


@dataclass(frozen=True)
class Quota:
    plan: str
    period_start: datetime
    products_audited: QuotaUsage
    visibility_checks: QuotaUsage
    optimizations: QuotaUsage
    competitors: QuotaUsage


def compute_quota(store, shop, now: datetime | None = None) -> Quota:
    """店舗のクォータ使用状況を既存レコードの件数から求める.

    Args:
        store: SupabaseStore 互換のストア
        shop: Shop
        now: 基準時刻（テスト用）
    """
    limits = get_plan_limits(shop.plan)
    since = month_start(now)
    return Quota(
        plan=shop.plan,
        period_start=since,
        products_audited=QuotaUsage(store.count_product_audits(shop.id), limits.products_audited),
        visibility_checks=QuotaUsage(
            store.count_visibility_checks(shop.id, since), limits.visibility_checks_per_month
        ),
        optimizations=QuotaUsage(
            store.count_optimizations(shop.id, since), limits.optimizations_per_month
        ),
        competitors=QuotaUsage(store.count_competitors(shop.id), limits.competitors_tracked),
    )
