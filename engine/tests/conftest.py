"""テスト共通のフェイク実装."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime

import pytest

from surfaced.errors import CatalogUnavailableError, PlatformUnavailableError
from surfaced.models import (
    PLATFORM_ORDER,
    CatalogPage,
    Competitor,
    Metafield,
    PlatformReply,
    Product,
    ProductImage,
    Shop,
)


class FakeStore:
    """SupabaseStore と同じメソッドを持つインメモリのストア."""

    def __init__(self) -> None:
        self.shops: dict[str, Shop] = {}
        self.audits: dict[tuple[str, str], object] = {}
        self.summaries: dict[str, object] = {}
        self.checks: list = []
        self.competitors: list[Competitor] = []
        self.optimizations: list[tuple[str, datetime]] = []
        self.events: list[tuple[str, str, dict]] = []
        self.counters: dict[str, int] = {}

    def add_shop(self, shop: Shop) -> Shop:
        self.shops[shop.id] = shop
        return shop

    def get_shop(self, shop_id):
        return self.shops.get(shop_id)

    def get_shop_by_domain(self, shop_domain):
        return next((s for s in self.shops.values() if s.shop_domain == shop_domain), None)

    def ensure_shop(self, shop_domain):
        shop = self.get_shop_by_domain(shop_domain)
        if shop is None:
            shop = self.add_shop(Shop(id=str(uuid.uuid4()), shop_domain=shop_domain))
        return shop

    def update_shop_stats(self, shop_id, products_count, ai_score, last_audit_at):
        shop = self.shops[shop_id]
        shop.products_count = products_count
        shop.ai_score = ai_score
        shop.last_audit_at = last_audit_at

    def upsert_product_audit(self, audit):
        self.audits[(audit.shop_id, audit.product_id)] = audit
        self.invalidate_summary(audit.shop_id)

    def list_product_audits(self, shop_id):
        return [a for (sid, _), a in self.audits.items() if sid == shop_id]

    def delete_stale_product_audits(self, shop_id, before):
        stale = [
            key for key, a in self.audits.items()
            if key[0] == shop_id and a.last_audit_at < before
        ]
        for key in stale:
            del self.audits[key]
        if stale:
            self.invalidate_summary(shop_id)
        return len(stale)

    def count_product_audits(self, shop_id):
        return len(self.list_product_audits(shop_id))

    def get_cached_summary(self, shop_id):
        return self.summaries.get(shop_id)

    def save_summary(self, summary):
        self.summaries[summary.shop_id] = summary

    def invalidate_summary(self, shop_id):
        self.summaries.pop(shop_id, None)

    def insert_visibility_check(self, check):
        self.checks.append(check)

    def count_visibility_checks(self, shop_id, since):
        return sum(1 for c in self.checks if c.shop_id == shop_id and c.checked_at >= since)

    def list_visibility_checks(self, shop_id, since=None, limit=None):
        rows = [
            c for c in self.checks
            if c.shop_id == shop_id and (since is None or c.checked_at >= since)
        ]
        rows.sort(key=lambda c: c.checked_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    def list_competitors(self, shop_id):
        return [c for c in self.competitors if c.shop_id == shop_id]

    def get_competitors(self, shop_id, competitor_ids):
        return [c for c in self.list_competitors(shop_id) if c.id in competitor_ids]

    def add_competitor(self, shop_id, domain, name):
        competitor = Competitor(id=str(uuid.uuid4()), shop_id=shop_id, domain=domain, name=name)
        self.competitors.append(competitor)
        return competitor

    def count_competitors(self, shop_id):
        return len(self.list_competitors(shop_id))

    def count_optimizations(self, shop_id, since):
        return sum(1 for sid, ts in self.optimizations if sid == shop_id and ts >= since)

    def log_event(self, shop_id, action, details):
        self.events.append((shop_id, action, details))

    def increment_counter(self, key, ttl_seconds):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]


class ThreadRecordingStore(FakeStore):
    """呼び出されたメソッドと実行スレッドを記録する."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, int]] = []

    def __getattribute__(self, name):
        attr = super().__getattribute__(name)
        if name.startswith("_") or name == "add_shop" or not callable(attr):
            return attr
        calls = super().__getattribute__("calls")

        def recorded(*args, **kwargs):
            calls.append((name, threading.get_ident()))
            return attr(*args, **kwargs)

        return recorded


class FakeCatalog:
    """ページ分割した商品リストを返すカタログ.

    fail_on_page に番号（0 始まり）を入れるとそのページで失敗する。
    """

    def __init__(self, products: list[Product], fail_on_page: int | None = None,
                 fail_count: bool = False) -> None:
        self.products = products
        self.fail_on_page = fail_on_page
        self.fail_count = fail_count
        self.requests: list[tuple[str | None, int]] = []

    def count_products(self, shop):
        if self.fail_count:
            raise CatalogUnavailableError("count failed")
        return len(self.products)

    def fetch_page(self, shop, cursor, page_size):
        self.requests.append((cursor, page_size))
        start = int(cursor or 0)
        if self.fail_on_page is not None and len(self.requests) - 1 == self.fail_on_page:
            raise CatalogUnavailableError("page failed", cursor=cursor)
        items = self.products[start:start + page_size]
        end = start + len(items)
        return CatalogPage(items=items, next_cursor=str(end) if end < len(self.products) else None)


class FakeRegistry:
    """プラットフォームごとに固定の応答を返すレジストリ.

    responses の値が None のプラットフォームは失敗を返す。
    """

    def __init__(self, responses: dict[str, str | None]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str]] = []

    @property
    def enabled(self):
        return [p for p in PLATFORM_ORDER if p in self.responses]

    async def query(self, platform, prompt):
        self.calls.append((platform, prompt))
        text = self.responses[platform]
        if text is None:
            return PlatformReply(
                platform, error=PlatformUnavailableError(f"{platform} unavailable: HTTP 500")
            )
        return PlatformReply(platform, text=text, duration_ms=12)


def make_product(n: int, **overrides) -> Product:
    fields = dict(
        id=str(1000 + n),
        title=f"Organic Cotton Tee {n}",
        handle=f"organic-cotton-tee-{n}",
        description_html="<p>" + "Soft organic cotton tee made in Portugal. " * 5 + "</p>",
        vendor="Acme",
        product_type="T-Shirts",
        tags=("cotton", "organic"),
        seo_title="Organic Cotton Tee",
        seo_description="A soft organic cotton tee.",
        images=(ProductImage("https://cdn.example.com/1.jpg", "Front view"),),
        metafields=(Metafield("custom", "material", "cotton"),),
    )
    fields.update(overrides)
    return Product(**fields)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def shop(store):
    return store.add_shop(Shop(
        id="shop-1",
        shop_domain="acme-store.myshopify.com",
        name="Acme",
        plan="BASIC",
        access_token="shpat_test",
    ))
