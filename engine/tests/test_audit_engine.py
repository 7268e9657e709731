"""audit_engine モジュールのユニットテスト."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest
from conftest import FakeCatalog, ThreadRecordingStore, make_product

from surfaced.audit_engine import AuditEngine, build_product_audit, summarize
from surfaced.errors import AuditFailedError, NotFoundError
from surfaced.models import Product, Shop


def _run(engine, shop_id):
    return asyncio.run(engine.run_audit(shop_id))


class TestRunAudit:
    """AuditEngine.run_audit のテスト."""

    def test_audits_all_products(self, store, shop):
        products = [make_product(i) for i in range(30)]
        engine = AuditEngine(store, FakeCatalog(products), page_size=10)

        summary = _run(engine, shop.id)

        assert summary.total_products == 30
        assert summary.audited_products == 30
        assert summary.average_score == 100
        assert summary.complete is True
        assert summary.plan_info.products_not_analyzed == 0
        assert store.count_product_audits(shop.id) == 30
        assert store.get_cached_summary(shop.id) == summary
        assert store.shops[shop.id].ai_score == 100
        assert store.events[-1][1] == "audit_completed"

    def test_idempotent(self, store, shop):
        """同じカタログで 2 回実行しても行が重複しないこと."""
        products = [make_product(i) for i in range(5)]
        engine = AuditEngine(store, FakeCatalog(products))

        first = _run(engine, shop.id)
        second = _run(engine, shop.id)

        assert store.count_product_audits(shop.id) == 5
        assert first.average_score == second.average_score
        assert first.issues == second.issues

    def test_plan_cap_is_reported(self, store, shop):
        """BASIC（上限 100 件）で 150 件なら 100 件だけ監査し、残りを報告すること."""
        products = [make_product(i) for i in range(150)]
        catalog = FakeCatalog(products)
        engine = AuditEngine(store, catalog, page_size=40)

        summary = _run(engine, shop.id)

        assert summary.total_products == 150
        assert summary.audited_products == 100
        assert summary.plan_info.products_limit == 100
        assert summary.plan_info.products_not_analyzed == 50
        # 上限に合わせて最終ページの件数を絞る
        assert [size for _, size in catalog.requests] == [40, 40, 20]

    def test_unlimited_plan(self, store):
        shop = store.add_shop(Shop(id="shop-p", shop_domain="big.myshopify.com", plan="PREMIUM"))
        products = [make_product(i) for i in range(120)]
        engine = AuditEngine(store, FakeCatalog(products), page_size=50)

        summary = _run(engine, shop.id)
        assert summary.audited_products == 120
        assert summary.plan_info.products_limit is None

    def test_empty_catalog(self, store, shop):
        summary = _run(AuditEngine(store, FakeCatalog([])), shop.id)

        assert summary.total_products == 0
        assert summary.audited_products == 0
        assert summary.average_score == 0

    def test_shop_not_found(self, store):
        with pytest.raises(NotFoundError):
            _run(AuditEngine(store, FakeCatalog([])), "missing")

    def test_failure_before_first_page(self, store, shop):
        """最初のページで失敗したら集計を書き込まないこと."""
        engine = AuditEngine(store, FakeCatalog([make_product(1)], fail_on_page=0))

        with pytest.raises(AuditFailedError) as exc:
            _run(engine, shop.id)

        assert exc.value.code == "AUDIT_FAILED"
        assert exc.value.retryable is True
        assert exc.value.details["pages_completed"] == 0
        assert store.get_cached_summary(shop.id) is None

    def test_count_failure(self, store, shop):
        engine = AuditEngine(store, FakeCatalog([make_product(1)], fail_count=True))

        with pytest.raises(AuditFailedError):
            _run(engine, shop.id)
        assert store.count_product_audits(shop.id) == 0

    def test_partial_summary_after_failure(self, store, shop):
        """途中で失敗したら処理済みページ分の集計を未完了として残すこと."""
        products = [make_product(i) for i in range(30)]
        engine = AuditEngine(store, FakeCatalog(products, fail_on_page=1), page_size=10)

        with pytest.raises(AuditFailedError) as exc:
            _run(engine, shop.id)

        assert exc.value.details["pages_completed"] == 1
        partial = store.get_cached_summary(shop.id)
        assert partial.complete is False
        assert partial.audited_products == 10
        assert partial.plan_info.products_not_analyzed == 20

    def test_downgrade_drops_rows_over_new_cap(self, store):
        """PLUS で 150 件監査した後に BASIC で再監査したら 100 件だけが残ること."""
        shop = store.add_shop(Shop(id="shop-d", shop_domain="down.myshopify.com", plan="PLUS"))
        products = [make_product(i) for i in range(150)]
        engine = AuditEngine(store, FakeCatalog(products), page_size=50)

        first = _run(engine, shop.id)
        assert first.audited_products == 150

        store.shops[shop.id].plan = "BASIC"
        second = _run(engine, shop.id)

        assert second.audited_products == 100
        assert second.plan_info.products_limit == 100
        assert second.plan_info.products_not_analyzed == 50
        assert store.count_product_audits(shop.id) == 100

    def test_removed_products_are_dropped(self, store, shop):
        engine = AuditEngine(store, FakeCatalog([make_product(i) for i in range(5)]))
        _run(engine, shop.id)

        engine.catalog = FakeCatalog([make_product(i) for i in range(3)])
        summary = _run(engine, shop.id)

        assert summary.audited_products == 3
        assert sorted(a.product_id for a in store.list_product_audits(shop.id)) == ["1000", "1001", "1002"]

    def test_store_calls_run_off_event_loop(self, shop):
        """ストアへの同期呼び出しはイベントループのスレッドで実行しないこと."""
        store = ThreadRecordingStore()
        store.add_shop(shop)
        engine = AuditEngine(store, FakeCatalog([make_product(i) for i in range(25)]), page_size=10)
        loop_thread = threading.get_ident()

        _run(engine, shop.id)

        called = {name for name, _ in store.calls}
        assert {"get_shop", "upsert_product_audit", "save_summary", "log_event"} <= called
        assert [name for name, ident in store.calls if ident == loop_thread] == []


class TestGetAuditSummary:
    """AuditEngine.get_audit_summary のテスト."""

    def test_recomputes_after_invalidation(self, store, shop):
        engine = AuditEngine(store, FakeCatalog([make_product(1)]))
        _run(engine, shop.id)

        store.upsert_product_audit(
            _audit_for(shop.id, Product(id="9", title="Bare", handle="bare"))
        )
        assert store.get_cached_summary(shop.id) is None

        summary = engine.get_audit_summary(shop.id)
        assert summary.audited_products == 2
        assert summary.average_score < 100
        assert store.get_cached_summary(shop.id) == summary

    def test_shop_not_found(self, store):
        with pytest.raises(NotFoundError):
            AuditEngine(store, FakeCatalog([])).get_audit_summary("missing")


class TestSummarize:
    """summarize のテスト."""

    def test_buckets_and_issue_counts(self, shop):
        audits = [
            _audit_for(shop.id, make_product(1)),
            _audit_for(shop.id, Product(id="2", title="Bare", handle="bare")),
        ]
        summary = summarize(shop, audits, total_products=2)

        assert summary.issues == {"critical": 1, "warning": 0, "info": 0}
        assert summary.issue_counts["critical"] == 2
        assert summary.issue_counts["warning"] == 4
        assert summary.issue_counts["info"] == 2
        assert summary.average_score == round((100 + 6) / 2)

    def test_rows_over_plan_cap_not_counted(self, shop):
        """プラン上限を超えて残っている行は新しいものから上限件数だけ数えること."""
        now = datetime.now(timezone.utc)
        audits = [
            build_product_audit(shop.id, make_product(i), now - timedelta(minutes=i))
            for i in range(150)
        ]
        summary = summarize(shop, audits, total_products=150)

        assert summary.audited_products == 100
        assert summary.plan_info.products_not_analyzed == 50
        assert summary.last_audit_at == now


def _audit_for(shop_id, product):
    return build_product_audit(shop_id, product, datetime.now(timezone.utc))
