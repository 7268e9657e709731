"""AI 対応度監査.

処理フロー:
  1. 店舗とプラン上限を取得
  2. カタログを 1 ページずつ取得（上限到達 or 最終ページまで）
  3. 各商品を採点し (shop_id, product_id) で upsert
  4. 今回更新されなかった行を削除し、残りから AuditSummary を再計算
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from surfaced.config import CATALOG_PAGE_SIZE
from surfaced.errors import AuditFailedError, CatalogUnavailableError, NotFoundError
from surfaced.models import AuditSummary, PlanInfo, Product, ProductAudit, Shop
from surfaced.plans import get_plan_limits
from surfaced.scoring import score_product, severity_bucket

logger = logging.getLogger(__name__)


def build_product_audit(shop_id: str, product: Product, audited_at: datetime) -> ProductAudit:
    result = score_product(product)
    return ProductAudit(
        shop_id=shop_id,
        product_id=product.id,
        title=product.title,
        handle=product.handle,
        ai_score=result.ai_score,
        issues=result.issues,
        has_images=result.has_images,
        has_description=result.has_description,
        has_metafields=result.has_metafields,
        description_length=result.description_length,
        last_audit_at=audited_at,
    )


def summarize(
    shop: Shop,
    audits: list[ProductAudit],
    total_products: int,
    complete: bool = True,
) -> AuditSummary:
    """ProductAudit 全件から店舗の集計を作る.

    プラン変更で上限を超える行が残っている場合は、新しいものから上限件数だけを数える。
    """
    limits = get_plan_limits(shop.plan)
    cap = limits.products_audited
    if cap is not None and len(audits) > cap:
        audits = sorted(audits, key=lambda a: a.last_audit_at, reverse=True)[:cap]
    audited = len(audits)
    average = round(sum(a.ai_score for a in audits) / audited) if audited else 0

    buckets = {"critical": 0, "warning": 0, "info": 0}
    issue_counts = {"critical": 0, "warning": 0, "info": 0}
    for a in audits:
        bucket = severity_bucket(a.ai_score)
        if bucket:
            buckets[bucket] += 1
        for issue in a.issues:
            issue_counts[issue.severity] += 1

    last_audit_at = max((a.last_audit_at for a in audits), default=None)

    return AuditSummary(
        shop_id=shop.id,
        total_products=total_products,
        audited_products=audited,
        average_score=average,
        issues=buckets,
        issue_counts=issue_counts,
        last_audit_at=last_audit_at,
        plan_info=PlanInfo(
            plan=shop.plan,
            products_limit=limits.products_audited,
            products_not_analyzed=max(0, total_products - audited),
        ),
        complete=complete,
    )


class AuditEngine:
    """カタログ監査の実行."""

    def __init__(self, store, catalog, page_size: int = CATALOG_PAGE_SIZE) -> None:
        self.store = store
        self.catalog = catalog
        self.page_size = page_size

    async def run_audit(self, shop_id: str) -> AuditSummary:
        """店舗の監査を実行し AuditSummary を返す.

        Raises:
            NotFoundError: 店舗が存在しない
            AuditFailedError: カタログ取得に失敗した（丸ごと再実行してよい）
        """
        shop = await asyncio.to_thread(self.store.get_shop, shop_id)
        if shop is None:
            raise NotFoundError("Shop not found", shop_id=shop_id)

        limits = get_plan_limits(shop.plan)
        cap = limits.products_audited
        logger.info("監査開始: shop=%s, plan=%s, cap=%s", shop.shop_domain, shop.plan, cap)

        try:
            total_products = await asyncio.to_thread(self.catalog.count_products, shop)
        except CatalogUnavailableError as e:
            raise AuditFailedError(
                "Failed to fetch product count", shop_id=shop_id, cause=e.code
            ) from e

        audited_at = datetime.now(timezone.utc)
        audited = 0
        pages_completed = 0
        cursor: str | None = None

        while cap is None or audited < cap:
            page_size = self.page_size if cap is None else min(self.page_size, cap - audited)
            try:
                page = await asyncio.to_thread(self.catalog.fetch_page, shop, cursor, page_size)
            except CatalogUnavailableError as e:
                logger.error(
                    "カタログ取得失敗で監査中断: shop=%s, pages_completed=%d",
                    shop.shop_domain, pages_completed,
                )
                if pages_completed > 0:
                    # 途中までの行は有効なので集計は作り直すが、完了扱いにはしない
                    await asyncio.to_thread(self._save_partial, shop, total_products)
                raise AuditFailedError(
                    "Catalog fetch failed during audit",
                    shop_id=shop_id,
                    pages_completed=pages_completed,
                    cause=e.code,
                ) from e

            items = page.items
            if cap is not None:
                items = items[: cap - audited]
            audits = [build_product_audit(shop.id, p, audited_at) for p in items]
            await asyncio.to_thread(self._persist, audits)

            audited += len(audits)
            pages_completed += 1
            logger.info(
                "ページ %d 完了: %d 件採点（累計 %d 件）", pages_completed, len(audits), audited
            )

            if page.next_cursor is None or not page.items:
                break
            cursor = page.next_cursor

        summary = await asyncio.to_thread(
            self._finish, shop, max(total_products, audited), audited, audited_at
        )

        if summary.plan_info.products_not_analyzed:
            logger.info(
                "プラン上限により未監査: %d 件 (shop=%s)",
                summary.plan_info.products_not_analyzed, shop.shop_domain,
            )
        logger.info(
            "監査完了: shop=%s, audited=%d, average=%d",
            shop.shop_domain, audited, summary.average_score,
        )
        return summary

    def get_audit_summary(self, shop_id: str) -> AuditSummary:
        """キャッシュ済みの集計を返す. なければ ProductAudit から再計算する."""
        shop = self.store.get_shop(shop_id)
        if shop is None:
            raise NotFoundError("Shop not found", shop_id=shop_id)

        cached = self.store.get_cached_summary(shop_id)
        if cached is not None:
            return cached

        rows = self.store.list_product_audits(shop_id)
        summary = summarize(shop, rows, max(shop.products_count, len(rows)))
        self.store.save_summary(summary)
        return summary

    def _persist(self, audits: list[ProductAudit]) -> None:
        for audit in audits:
            self.store.upsert_product_audit(audit)

    def _save_partial(self, shop: Shop, total_products: int) -> None:
        rows = self.store.list_product_audits(shop.id)
        self.store.save_summary(summarize(shop, rows, total_products, complete=False))

    def _finish(
        self, shop: Shop, total_products: int, audited: int, audited_at: datetime
    ) -> AuditSummary:
        """完走した監査の後処理. 今回更新されなかった行（削除された商品・上限外）は消す."""
        removed = self.store.delete_stale_product_audits(shop.id, audited_at)
        if removed:
            logger.info("古い監査行を削除: %d 件 (shop=%s)", removed, shop.shop_domain)

        rows = self.store.list_product_audits(shop.id)
        summary = summarize(shop, rows, total_products)
        self.store.save_summary(summary)
        self.store.update_shop_stats(shop.id, summary.total_products, summary.average_score, audited_at)
        self.store.log_event(shop.id, "audit_completed", {
            "total_products": summary.total_products,
            "audited_products": audited,
            "average_score": summary.average_score,
            "issues": summary.issues,
        })
        return summary
