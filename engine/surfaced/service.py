"""外部に公開する操作.

HTTP ハンドラ等の薄いグルーから呼ばれる。戻り値は型付きの結果、
失敗は errors.py の例外で返す。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from surfaced.analytics import AnalyticsService
from surfaced.audit_engine import AuditEngine
from surfaced.config import Environment
from surfaced.errors import NotFoundError, QuotaExceededError, RateLimitedError, ValidationError
from surfaced.models import (
    AuditSummary,
    Competitor,
    Shop,
    VisibilityCheck,
    VisibilityRun,
    normalize_domain,
)
from surfaced.plans import Quota, compute_quota
from surfaced.rate_limit import FixedWindowRateLimiter, admin_rate_limiter
from surfaced.visibility import VisibilityOrchestrator

logger = logging.getLogger(__name__)


class SurfacedService:
    def __init__(
        self,
        store,
        catalog,
        registry,
        environment: Environment | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
    ) -> None:
        self.store = store
        self.environment = environment or Environment()
        self.rate_limiter = rate_limiter or admin_rate_limiter(store)
        self.audits = AuditEngine(store, catalog)
        self.visibility = VisibilityOrchestrator(store, registry)
        self.analytics = AnalyticsService(store)
        self._dev_shop: Shop | None = None

    # --- 店舗解決 ---

    def resolve_shop(self, shop_id: str | None) -> Shop:
        """shop_id から店舗を引く. 開発環境で未指定なら開発用ショップを使う."""
        env = self.environment
        if shop_id is None and env.is_development and env.dev_shop:
            if self._dev_shop is None:
                logger.info("開発用ショップを使用: %s", env.dev_shop)
                self._dev_shop = self.store.ensure_shop(env.dev_shop)
            return self._dev_shop
        if not shop_id:
            raise ValidationError("shop_id is required")
        shop = self.store.get_shop(shop_id)
        if shop is None:
            raise NotFoundError("Shop not found", shop_id=shop_id)
        return shop

    def check_rate_limit(self, identifier: str) -> None:
        if self.environment.is_development:
            return
        result = self.rate_limiter.check(identifier)
        if not result.success:
            raise RateLimitedError(
                "Too many requests", limit=result.limit, reset=result.reset
            )

    # --- 監査 ---

    async def run_audit(self, shop_id: str | None) -> AuditSummary:
        shop = await asyncio.to_thread(self.resolve_shop, shop_id)
        await asyncio.to_thread(self.check_rate_limit, shop.id)
        return await self.audits.run_audit(shop.id)

    def get_audit_summary(self, shop_id: str | None) -> AuditSummary:
        shop = self.resolve_shop(shop_id)
        return self.audits.get_audit_summary(shop.id)

    # --- 可視性 ---

    async def run_visibility_check(
        self,
        shop_id: str | None,
        queries: list[str] | None = None,
        platforms: list[str] | None = None,
    ) -> VisibilityRun:
        shop = await asyncio.to_thread(self.resolve_shop, shop_id)
        await asyncio.to_thread(self.check_rate_limit, shop.id)
        return await self.visibility.run_visibility_check(shop.id, queries, platforms)

    def get_visibility_history(self, shop_id: str | None) -> list[VisibilityCheck]:
        shop = self.resolve_shop(shop_id)
        return self.visibility.get_visibility_history(shop.id)

    # --- 集計 ---

    def get_analytics(self, shop_id: str | None, kind: str, params: dict[str, Any] | None = None):
        shop = self.resolve_shop(shop_id)
        return self.analytics.get_analytics(shop.id, kind, params)

    # --- クォータ・競合 ---

    def get_quota(self, shop_id: str | None) -> Quota:
        return compute_quota(self.store, self.resolve_shop(shop_id))

    def add_competitor(self, shop_id: str | None, domain: str, name: str | None = None) -> Competitor:
        shop = self.resolve_shop(shop_id)
        domain = normalize_domain(domain)
        if not domain or "." not in domain:
            raise ValidationError("Please enter a valid competitor domain.", domain=domain)

        existing = self.store.list_competitors(shop.id)
        if any(c.domain == domain for c in existing):
            return next(c for c in existing if c.domain == domain)

        quota = compute_quota(self.store, shop)
        if not quota.competitors.allows(1):
            raise QuotaExceededError(
                f"Competitor limit reached ({quota.competitors.limit}). "
                "Upgrade your plan to track more competitors.",
                used=quota.competitors.used, limit=quota.competitors.limit,
            )
        return self.store.add_competitor(shop.id, domain, name)
