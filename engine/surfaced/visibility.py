"""AI 可視性チェック.

処理フロー:
  1. 入力検証（クエリ・プラットフォーム名）
  2. 当月の残り枠をプラットフォーム数で割ってクエリ数を絞る
     （1 クエリも割り当てられなければ何も書かずに拒否）
  3. プラットフォーム × クエリを並行に問い合わせ
  4. 応答ごとに解析して即時 INSERT（遅いプラットフォームを待たない）
  5. 結果を固定のプラットフォーム順に並べて返す

同じ店舗で同時に実行された場合、クォータ判定は最善努力で、
1 回分だけ上限を超えることがある。
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from surfaced.analyzer import analyze
from surfaced.config import DEFAULT_QUERY_LIMIT, HISTORY_LIMIT, PLATFORM_RETRIES
from surfaced.errors import NotFoundError, QuotaExceededError, ValidationError
from surfaced.models import (
    PLATFORM_ORDER,
    PlatformFailure,
    PlatformReply,
    Shop,
    VisibilityCheck,
    VisibilityRun,
)
from surfaced.plans import get_plan_limits, month_start

logger = logging.getLogger(__name__)


def build_default_queries(brand_name: str, product_type: str | None = None) -> list[str]:
    """クエリ未指定時の既定クエリ."""
    queries: list[str] = []
    if product_type:
        queries.append(f"What are the best {product_type} brands?")
        queries.append(f"Recommend some good {product_type} online stores")
        queries.append(f"Where can I buy quality {product_type}?")
    queries.append(f"What do you know about {brand_name}?")
    queries.append(f"Is {brand_name} a good brand? What do they sell?")
    queries.append(f"Tell me about {brand_name} products")
    return queries[:DEFAULT_QUERY_LIMIT]


def validate_queries(queries: list[str] | None) -> list[str] | None:
    if queries is None:
        return None
    if not isinstance(queries, (list, tuple)) or not queries:
        raise ValidationError("queries must be a non-empty list of strings")
    cleaned: list[str] = []
    for q in queries:
        if not isinstance(q, str) or not q.strip():
            raise ValidationError("queries must be non-empty strings", query=q)
        cleaned.append(q.strip())
    return cleaned


def validate_platforms(platforms: list[str] | None) -> list[str] | None:
    if platforms is None:
        return None
    unknown = [p for p in platforms if p not in PLATFORM_ORDER]
    if unknown:
        raise ValidationError(f"Unknown platform: {', '.join(map(str, unknown))}", platforms=unknown)
    return list(platforms)


class VisibilityOrchestrator:
    """複数プラットフォームへの可視性チェックを実行する."""

    def __init__(self, store, registry, retries: int = PLATFORM_RETRIES) -> None:
        self.store = store
        self.registry = registry
        self.retries = retries

    async def run_visibility_check(
        self,
        shop_id: str,
        queries: list[str] | None = None,
        platforms: list[str] | None = None,
    ) -> VisibilityRun:
        """可視性チェックを 1 回実行する.

        Args:
            shop_id: 店舗 ID
            queries: 指定時は既定クエリを置き換える（追加ではない）
            platforms: 対象プラットフォーム名。None なら有効なもの全部

        Raises:
            ValidationError: 不正なクエリ・未知のプラットフォーム・有効なプラットフォームなし
            NotFoundError: 店舗が存在しない
            QuotaExceededError: 残り枠がプラットフォーム数に満たない（何も書き込まない）
        """
        queries = validate_queries(queries)
        requested = validate_platforms(platforms)

        shop = await asyncio.to_thread(self.store.get_shop, shop_id)
        if shop is None:
            raise NotFoundError("Shop not found", shop_id=shop_id)

        limits = get_plan_limits(shop.plan)
        targets = self._select_platforms(requested, limits.platforms_tracked)
        if not targets:
            raise ValidationError(
                "No AI platforms configured. Please add API keys in your environment.",
                requested=requested,
            )

        if queries is None:
            product_type = await asyncio.to_thread(self._guess_product_type, shop)
            queries = build_default_queries(shop.brand_name, product_type)

        used = await asyncio.to_thread(self.store.count_visibility_checks, shop.id, month_start())
        limit = limits.visibility_checks_per_month
        # 残り枠を全プラットフォームに均等に割り当て、クエリ数を絞る
        per_platform = max(0, limit - used) // len(targets)
        if per_platform == 0:
            logger.warning(
                "クォータ超過で拒否: shop=%s, used=%d, limit=%d, platforms=%d",
                shop.shop_domain, used, limit, len(targets),
            )
            raise QuotaExceededError(
                f"Visibility check limit reached ({limit}/month). "
                "Upgrade your plan for more checks.",
                used=used, limit=limit, platforms=len(targets),
            )
        if len(queries) > per_platform:
            logger.info(
                "残り枠に合わせてクエリを削減: %d -> %d (shop=%s)",
                len(queries), per_platform, shop.shop_domain,
            )
            queries = queries[:per_platform]

        competitors = [
            c.display_name
            for c in await asyncio.to_thread(self.store.list_competitors, shop.id)
        ]
        run = VisibilityRun(
            run_id=str(uuid.uuid4()),
            shop_id=shop.id,
            brand_name=shop.brand_name,
            queries=queries,
            platforms=targets,
        )
        logger.info(
            "可視性チェック開始: shop=%s, platforms=%s, queries=%d",
            shop.shop_domain, ",".join(targets), len(queries),
        )

        run.state = "FANNED_OUT"
        tasks = [
            self._check_one(run, shop, platform, query, competitors)
            for platform in targets
            for query in queries
        ]
        results = await asyncio.gather(*tasks)

        order = {p: i for i, p in enumerate(targets)}
        query_order = {q: i for i, q in enumerate(queries)}
        run.checks = sorted(
            (c for c in results if c is not None),
            key=lambda c: (order[c.platform], query_order.get(c.query, 0)),
        )
        run.errors.sort(key=lambda f: (order[f.platform], query_order.get(f.query, 0)))
        for platform in targets:
            succeeded = any(c.platform == platform for c in run.checks)
            run.platform_status[platform] = "SUCCEEDED" if succeeded else "FAILED"
        run.state = "AGGREGATED"

        summary = run.summary
        await asyncio.to_thread(self.store.log_event, shop.id, "visibility_check", {
            "run_id": run.run_id,
            "queries_run": len(queries),
            "platforms_checked": targets,
            "mentioned": summary["mentioned"],
            "failed": summary["failed"],
        })
        logger.info("可視性チェック完了: shop=%s, summary=%s", shop.shop_domain, summary)
        return run

    def get_visibility_history(self, shop_id: str, limit: int = HISTORY_LIMIT) -> list[VisibilityCheck]:
        """プランの保持期間内のチェックを新しい順に返す."""
        shop = self.store.get_shop(shop_id)
        if shop is None:
            raise NotFoundError("Shop not found", shop_id=shop_id)
        limits = get_plan_limits(shop.plan)
        since = datetime.now(timezone.utc) - timedelta(days=limits.history_days)
        return self.store.list_visibility_checks(shop_id, since=since, limit=limit)

    async def _check_one(
        self,
        run: VisibilityRun,
        shop: Shop,
        platform: str,
        query: str,
        competitors: list[str],
    ) -> VisibilityCheck | None:
        reply = await self._query_with_retries(platform, query)
        if not reply.ok:
            run.errors.append(PlatformFailure(
                platform=platform,
                query=query,
                code=getattr(reply.error, "code", "PLATFORM_UNAVAILABLE"),
                message=str(reply.error),
            ))
            return None

        analysis = analyze(reply.text, shop.brand_name, competitors, domain=shop.shop_domain)
        check = VisibilityCheck(
            id=str(uuid.uuid4()),
            shop_id=shop.id,
            run_id=run.run_id,
            platform=platform,
            query=query,
            is_mentioned=analysis.is_mentioned,
            mention_context=analysis.mention_context,
            position=analysis.position,
            competitors_found=analysis.competitors_found,
            response_quality=analysis.response_quality,
            sentiment=analysis.sentiment,
            raw_response=reply.text,
            duration_ms=reply.duration_ms,
            checked_at=datetime.now(timezone.utc),
        )
        await asyncio.to_thread(self.store.insert_visibility_check, check)
        return check

    async def _query_with_retries(self, platform: str, query: str) -> PlatformReply:
        reply = await self.registry.query(platform, query)
        attempt = 0
        while not reply.ok and attempt < self.retries:
            attempt += 1
            logger.info("再試行 %d/%d: platform=%s", attempt, self.retries, platform)
            reply = await self.registry.query(platform, query)
        return reply

    def _select_platforms(self, requested: list[str] | None, max_platforms: int) -> list[str]:
        enabled = self.registry.enabled
        if requested is not None:
            enabled = [p for p in enabled if p in requested]
        return enabled[:max_platforms]

    def _guess_product_type(self, shop: Shop) -> str | None:
        """監査済み商品のタイトル末尾の単語を商品タイプとみなす."""
        audits = self.store.list_product_audits(shop.id)
        if not audits or not audits[0].title.strip():
            return None
        return audits[0].title.split()[-1]
