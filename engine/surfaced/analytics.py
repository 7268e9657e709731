"""可視性チェック履歴の集計.

前半は VisibilityCheck のリストを受け取る純粋関数、後半の AnalyticsService が
ストアから履歴を読み出してプランの保持期間で窓を切る。
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from surfaced.errors import NotFoundError, ValidationError
from surfaced.models import PLATFORM_ORDER, Competitor, VisibilityCheck
from surfaced.plans import get_plan_limits

logger = logging.getLogger(__name__)


@dataclass
class TrendPoint:
    date: date
    checks: int
    mentions: int
    mention_rate: float | None  # チェックなしの日は None（0 とは区別する）
    avg_position: float | None


@dataclass
class ShareOfVoice:
    value: float
    no_data: bool
    brand_mentions: int
    competitor_mentions: dict[str, int] = field(default_factory=dict)
    total_checks: int = 0
    by_platform: dict[str, float | None] = field(default_factory=dict)


@dataclass
class PositionPoint:
    period_start: date
    avg_position: float | None
    ranked_mentions: int
    unranked_mentions: int  # 言及ありだが順位なし
    by_platform: dict[str, float | None] = field(default_factory=dict)


@dataclass
class CompetitorStat:
    name: str
    mentions: int
    mention_rate: float | None


def _utc_date(ts: datetime) -> date:
    return ts.astimezone(timezone.utc).date()


def _window_start(days: int, now: datetime) -> date:
    return _utc_date(now) - timedelta(days=days - 1)


def _in_window(checks: list[VisibilityCheck], days: int, now: datetime) -> list[VisibilityCheck]:
    start = _window_start(days, now)
    today = _utc_date(now)
    return [c for c in checks if start <= _utc_date(c.checked_at) <= today]


def _parse_days(value: Any) -> int:
    """days パラメータを整数に変換する. 数値でないか 1 未満なら ValidationError."""
    if isinstance(value, bool):
        raise ValidationError("days must be an integer", days=value)
    try:
        days = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("days must be an integer", days=value) from e
    if days < 1:
        raise ValidationError("days must be >= 1", days=days)
    return days


def _avg(values: list[int]) -> float | None:
    return round(sum(values) / len(values), 2) if values else None


def _mentions_of(check: VisibilityCheck, name: str) -> bool:
    key = name.lower()
    return any(found.lower() == key for found in check.competitors_found)


def trend_data(
    checks: list[VisibilityCheck], days: int, now: datetime | None = None
) -> list[TrendPoint]:
    """日別の言及率. 窓内の全日についてバケットを作る（古い順）."""
    if days < 1:
        raise ValidationError("days must be >= 1", days=days)
    now = now or datetime.now(timezone.utc)

    by_day: dict[date, list[VisibilityCheck]] = defaultdict(list)
    for c in _in_window(checks, days, now):
        by_day[_utc_date(c.checked_at)].append(c)

    start = _window_start(days, now)
    points: list[TrendPoint] = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        day_checks = by_day.get(day, [])
        mentions = sum(1 for c in day_checks if c.is_mentioned)
        positions = [c.position for c in day_checks if c.is_mentioned and c.position is not None]
        points.append(TrendPoint(
            date=day,
            checks=len(day_checks),
            mentions=mentions,
            mention_rate=round(mentions / len(day_checks), 4) if day_checks else None,
            avg_position=_avg(positions),
        ))
    return points


def _sov_counts(checks: list[VisibilityCheck], competitors: list[str]) -> tuple[int, dict[str, int]]:
    brand = sum(1 for c in checks if c.is_mentioned)
    per_competitor = {
        name: sum(1 for c in checks if _mentions_of(c, name)) for name in competitors
    }
    return brand, per_competitor


def _by_platform(checks: list[VisibilityCheck]) -> dict[str, list[VisibilityCheck]]:
    """プラットフォーム別に分ける. キーは PLATFORM_ORDER 順."""
    grouped: dict[str, list[VisibilityCheck]] = defaultdict(list)
    for c in checks:
        grouped[c.platform].append(c)
    order = {p: i for i, p in enumerate(PLATFORM_ORDER)}
    return {p: grouped[p] for p in sorted(grouped, key=lambda p: order.get(p, len(order)))}


def share_of_voice(checks: list[VisibilityCheck], competitors: list[str]) -> ShareOfVoice:
    """brand / (brand + 競合合計). 分母 0 なら value=0, no_data=True.

    by_platform はチェックのあったプラットフォームごとの値（分母 0 なら None）。
    """
    by_platform: dict[str, float | None] = {}
    for platform, platform_checks in _by_platform(checks).items():
        p_brand, p_competitors = _sov_counts(platform_checks, competitors)
        p_denominator = p_brand + sum(p_competitors.values())
        by_platform[platform] = round(p_brand / p_denominator, 4) if p_denominator else None

    brand, per_competitor = _sov_counts(checks, competitors)
    denominator = brand + sum(per_competitor.values())
    if denominator == 0:
        return ShareOfVoice(
            value=0.0, no_data=True, brand_mentions=0,
            competitor_mentions=per_competitor, total_checks=len(checks),
            by_platform=by_platform,
        )
    return ShareOfVoice(
        value=round(brand / denominator, 4),
        no_data=False,
        brand_mentions=brand,
        competitor_mentions=per_competitor,
        total_checks=len(checks),
        by_platform=by_platform,
    )


def position_history(
    checks: list[VisibilityCheck],
    days: int,
    now: datetime | None = None,
    period: str = "day",
) -> list[PositionPoint]:
    """期間ごとの平均順位と、順位なし言及の件数. by_platform はプラットフォーム別の平均順位."""
    if period not in ("day", "week"):
        raise ValidationError(f"Unknown period: {period}", period=period)
    if days < 1:
        raise ValidationError("days must be >= 1", days=days)
    now = now or datetime.now(timezone.utc)

    def bucket(d: date) -> date:
        return d - timedelta(days=d.weekday()) if period == "week" else d

    grouped: dict[date, list[VisibilityCheck]] = defaultdict(list)
    for c in _in_window(checks, days, now):
        if c.is_mentioned:
            grouped[bucket(_utc_date(c.checked_at))].append(c)

    points: list[PositionPoint] = []
    for start in sorted(grouped):
        mentioned = grouped[start]
        positions = [c.position for c in mentioned if c.position is not None]
        points.append(PositionPoint(
            period_start=start,
            avg_position=_avg(positions),
            ranked_mentions=len(positions),
            unranked_mentions=len(mentioned) - len(positions),
            by_platform={
                platform: _avg([c.position for c in rows if c.position is not None])
                for platform, rows in _by_platform(mentioned).items()
            },
        ))
    return points


def competitor_comparison(
    checks: list[VisibilityCheck], brand_name: str, competitors: list[str]
) -> list[CompetitorStat]:
    """自ブランドと競合の言及率を並べる（先頭が自ブランド）."""
    total = len(checks)

    def rate(n: int) -> float | None:
        return round(n / total, 4) if total else None

    brand = sum(1 for c in checks if c.is_mentioned)
    stats = [CompetitorStat(brand_name, brand, rate(brand))]
    for name in competitors:
        n = sum(1 for c in checks if _mentions_of(c, name))
        stats.append(CompetitorStat(name, n, rate(n)))
    return stats


class AnalyticsService:
    """ストアから履歴を読み出して集計する."""

    KINDS = ("trend", "share_of_voice", "position_history", "competitors")

    def __init__(self, store) -> None:
        self.store = store

    def get_analytics(self, shop_id: str, kind: str, params: dict[str, Any] | None = None):
        params = params or {}
        if kind not in self.KINDS:
            raise ValidationError(f"Unknown analytics type: {kind}", kind=kind)

        shop = self.store.get_shop(shop_id)
        if shop is None:
            raise NotFoundError("Shop not found", shop_id=shop_id)

        limits = get_plan_limits(shop.plan)
        days = min(_parse_days(params.get("days", 30)), limits.history_days)
        now = params.get("now") or datetime.now(timezone.utc)

        since = datetime.combine(_window_start(days, now), datetime.min.time(), tzinfo=timezone.utc)
        checks = self.store.list_visibility_checks(shop_id, since=since)

        if kind == "trend":
            return trend_data(checks, days, now)
        if kind == "position_history":
            return position_history(checks, days, now, params.get("period", "day"))

        competitors = self._resolve_competitors(shop_id, params.get("competitor_ids"))
        names = [c.display_name for c in competitors]
        if kind == "share_of_voice":
            return share_of_voice(_in_window(checks, days, now), names)
        return competitor_comparison(_in_window(checks, days, now), shop.brand_name, names)

    def trend_data(self, shop_id: str, days: int = 30) -> list[TrendPoint]:
        return self.get_analytics(shop_id, "trend", {"days": days})

    def share_of_voice(self, shop_id: str, competitor_ids: list[str], days: int = 30) -> ShareOfVoice:
        return self.get_analytics(
            shop_id, "share_of_voice", {"competitor_ids": competitor_ids, "days": days}
        )

    def position_history(self, shop_id: str, days: int = 30, period: str = "day") -> list[PositionPoint]:
        return self.get_analytics(shop_id, "position_history", {"days": days, "period": period})

    def _resolve_competitors(self, shop_id: str, competitor_ids: list[str] | None) -> list[Competitor]:
        if competitor_ids is None:
            return self.store.list_competitors(shop_id)
        if not isinstance(competitor_ids, (list, tuple)) or not all(
            isinstance(cid, str) for cid in competitor_ids
        ):
            raise ValidationError(
                "competitor_ids must be a list of strings", competitor_ids=competitor_ids
            )
        found = self.store.get_competitors(shop_id, list(competitor_ids))
        missing = set(competitor_ids) - {c.id for c in found}
        if missing:
            raise NotFoundError("Competitor not found", competitor_ids=sorted(missing))
        order = {cid: i for i, cid in enumerate(competitor_ids)}
        return sorted(found, key=lambda c: order[c.id])
