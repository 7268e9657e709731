"""Supabase データベース操作モジュール.

全テーブルは surfaced スキーマに配置。
Supabase client のスキーマ指定は .schema() で行う。

書き込みはすべて 1 行単位の upsert / insert で、再試行しても安全。
visibility_checks は追記のみ（更新・削除しない）。
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from supabase import create_client

from surfaced.config import SUPABASE_SCHEMA, SUPABASE_SECRET_KEY, SUPABASE_URL
from surfaced.models import (
    AuditSummary,
    Competitor,
    Issue,
    PlanInfo,
    ProductAudit,
    Shop,
    VisibilityCheck,
)

logger = logging.getLogger(__name__)

_client = None


def _get_client():
    """Supabase クライアントを遅延生成する."""
    global _client
    if _client is None:
        _client = create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)
    return _client


def _table(name: str):
    """surfaced スキーマのテーブルを参照する."""
    return _get_client().schema(SUPABASE_SCHEMA).table(name)


def _rpc(fn: str, params: dict[str, Any]):
    return _get_client().schema(SUPABASE_SCHEMA).rpc(fn, params)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _shop_from_row(row: dict) -> Shop:
    return Shop(
        id=row["id"],
        shop_domain=row["shop_domain"],
        name=row.get("name"),
        plan=row.get("plan") or "FREE",
        access_token=row.get("access_token"),
        products_count=row.get("products_count") or 0,
        ai_score=row.get("ai_score"),
        last_audit_at=_parse_ts(row.get("last_audit_at")),
    )


def _audit_from_row(row: dict) -> ProductAudit:
    return ProductAudit(
        shop_id=row["shop_id"],
        product_id=str(row["product_id"]),
        title=row.get("title", ""),
        handle=row.get("handle", ""),
        ai_score=row["ai_score"],
        issues=[Issue(**i) for i in row.get("issues") or []],
        has_images=row.get("has_images", False),
        has_description=row.get("has_description", False),
        has_metafields=row.get("has_metafields", False),
        description_length=row.get("description_length", 0),
        last_audit_at=_parse_ts(row["last_audit_at"]),
    )


def _summary_from_row(row: dict) -> AuditSummary:
    return AuditSummary(
        shop_id=row["shop_id"],
        total_products=row["total_products"],
        audited_products=row["audited_products"],
        average_score=row["average_score"],
        issues=row.get("issues") or {},
        issue_counts=row.get("issue_counts") or {},
        last_audit_at=_parse_ts(row.get("last_audit_at")),
        plan_info=PlanInfo(**(row.get("plan_info") or {"plan": "FREE", "products_limit": None})),
        complete=row.get("complete", True),
    )


def _check_from_row(row: dict) -> VisibilityCheck:
    return VisibilityCheck(
        id=row["id"],
        shop_id=row["shop_id"],
        run_id=row.get("run_id") or "",
        platform=row["platform"],
        query=row["query"],
        is_mentioned=row["is_mentioned"],
        mention_context=row.get("mention_context"),
        position=row.get("position"),
        competitors_found=list(row.get("competitors_found") or []),
        response_quality=row.get("response_quality") or "none",
        sentiment=row.get("sentiment") or "neutral",
        raw_response=row.get("raw_response") or "",
        duration_ms=row.get("duration_ms") or 0,
        checked_at=_parse_ts(row["checked_at"]),
    )


def _competitor_from_row(row: dict) -> Competitor:
    return Competitor(
        id=row["id"],
        shop_id=row["shop_id"],
        domain=row["domain"],
        name=row.get("name"),
    )


class SupabaseStore:
    """監査・可視性チェックの永続化."""

    # --- shops ---

    def get_shop(self, shop_id: str) -> Shop | None:
        resp = _table("shops").select("*").eq("id", shop_id).limit(1).execute()
        return _shop_from_row(resp.data[0]) if resp.data else None

    def get_shop_by_domain(self, shop_domain: str) -> Shop | None:
        resp = _table("shops").select("*").eq("shop_domain", shop_domain).limit(1).execute()
        return _shop_from_row(resp.data[0]) if resp.data else None

    def ensure_shop(self, shop_domain: str) -> Shop:
        """shop_domain の店舗がなければ作成する（既存行は変更しない）."""
        _table("shops").upsert(
            {"shop_domain": shop_domain},
            on_conflict="shop_domain",
            ignore_duplicates=True,
        ).execute()
        return self.get_shop_by_domain(shop_domain)

    def update_shop_stats(
        self, shop_id: str, products_count: int, ai_score: int, last_audit_at: datetime
    ) -> None:
        _table("shops").update({
            "products_count": products_count,
            "ai_score": ai_score,
            "last_audit_at": last_audit_at.isoformat(),
        }).eq("id", shop_id).execute()

    # --- product_audits ---

    def upsert_product_audit(self, audit: ProductAudit) -> None:
        """(shop_id, product_id) で上書き or 挿入し、集計キャッシュを破棄する."""
        _table("product_audits").upsert(
            audit.to_row(), on_conflict="shop_id,product_id"
        ).execute()
        self.invalidate_summary(audit.shop_id)

    def list_product_audits(self, shop_id: str) -> list[ProductAudit]:
        resp = (
            _table("product_audits")
            .select("*")
            .eq("shop_id", shop_id)
            .order("last_audit_at", desc=True)
            .execute()
        )
        return [_audit_from_row(row) for row in resp.data]

    def delete_stale_product_audits(self, shop_id: str, before: datetime) -> int:
        """before より前に監査された行を削除し、削除件数を返す."""
        resp = (
            _table("product_audits")
            .delete()
            .eq("shop_id", shop_id)
            .lt("last_audit_at", before.isoformat())
            .execute()
        )
        if resp.data:
            self.invalidate_summary(shop_id)
        return len(resp.data or [])

    def count_product_audits(self, shop_id: str) -> int:
        resp = (
            _table("product_audits")
            .select("product_id", count="exact")
            .eq("shop_id", shop_id)
            .execute()
        )
        return resp.count or 0

    # --- audit_summaries（キャッシュ） ---

    def get_cached_summary(self, shop_id: str) -> AuditSummary | None:
        resp = _table("audit_summaries").select("*").eq("shop_id", shop_id).limit(1).execute()
        return _summary_from_row(resp.data[0]) if resp.data else None

    def save_summary(self, summary: AuditSummary) -> None:
        _table("audit_summaries").upsert(summary.to_row(), on_conflict="shop_id").execute()

    def invalidate_summary(self, shop_id: str) -> None:
        _table("audit_summaries").delete().eq("shop_id", shop_id).execute()

    # --- visibility_checks ---

    def insert_visibility_check(self, check: VisibilityCheck) -> None:
        _table("visibility_checks").insert(check.to_row()).execute()
        logger.debug("visibility_checks に 1 件挿入: platform=%s", check.platform)

    def count_visibility_checks(self, shop_id: str, since: datetime) -> int:
        resp = (
            _table("visibility_checks")
            .select("id", count="exact")
            .eq("shop_id", shop_id)
            .gte("checked_at", since.isoformat())
            .execute()
        )
        return resp.count or 0

    def list_visibility_checks(
        self, shop_id: str, since: datetime | None = None, limit: int | None = None
    ) -> list[VisibilityCheck]:
        """新しい順に返す."""
        query = _table("visibility_checks").select("*").eq("shop_id", shop_id)
        if since is not None:
            query = query.gte("checked_at", since.isoformat())
        query = query.order("checked_at", desc=True)
        if limit is not None:
            query = query.limit(limit)
        resp = query.execute()
        return [_check_from_row(row) for row in resp.data]

    # --- competitors ---

    def list_competitors(self, shop_id: str) -> list[Competitor]:
        resp = _table("competitors").select("*").eq("shop_id", shop_id).execute()
        return [_competitor_from_row(row) for row in resp.data]

    def get_competitors(self, shop_id: str, competitor_ids: list[str]) -> list[Competitor]:
        if not competitor_ids:
            return []
        resp = (
            _table("competitors")
            .select("*")
            .eq("shop_id", shop_id)
            .in_("id", competitor_ids)
            .execute()
        )
        return [_competitor_from_row(row) for row in resp.data]

    def add_competitor(self, shop_id: str, domain: str, name: str | None) -> Competitor:
        resp = _table("competitors").upsert(
            {"shop_id": shop_id, "domain": domain, "name": name},
            on_conflict="shop_id,domain",
        ).execute()
        return _competitor_from_row(resp.data[0])

    def count_competitors(self, shop_id: str) -> int:
        resp = _table("competitors").select("id", count="exact").eq("shop_id", shop_id).execute()
        return resp.count or 0

    # --- optimizations（最適化機能の記録。数えるだけ） ---

    def count_optimizations(self, shop_id: str, since: datetime) -> int:
        resp = (
            _table("optimizations")
            .select("id", count="exact")
            .eq("shop_id", shop_id)
            .gte("created_at", since.isoformat())
            .execute()
        )
        return resp.count or 0

    # --- audit_logs ---

    def log_event(self, shop_id: str, action: str, details: dict[str, Any]) -> None:
        _table("audit_logs").insert({
            "shop_id": shop_id,
            "action": action,
            "details": details,
        }).execute()

    # --- レート制限カウンタ ---

    def increment_counter(self, key: str, ttl_seconds: int) -> int:
        """共有カウンタを原子的に +1 して現在値を返す.

        increment_rate_limit は DB 側の関数で、期限切れのキーは作り直す。
        """
        resp = _rpc("increment_rate_limit", {"p_key": key, "p_ttl_seconds": ttl_seconds}).execute()
        return int(resp.data)
