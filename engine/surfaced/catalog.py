"""Shopify Admin GraphQL から商品カタログを取得するモジュール.

取得戦略:
  1. products(first, after) のカーソルページング
  2. 総件数は productsCount（プラン上限で打ち切った件数の報告に使う）
"""

from __future__ import annotations

import logging
import re
from typing import Any

import requests

from surfaced.config import (
    CATALOG_REQUEST_TIMEOUT,
    SHOPIFY_API_VERSION,
    SHOPIFY_GRAPHQL_URL_TEMPLATE,
)
from surfaced.errors import CatalogUnavailableError
from surfaced.models import CatalogPage, Metafield, Product, ProductImage, Shop

logger = logging.getLogger(__name__)

# gid://shopify/Product/123456789 から数値 ID を抽出する正規表現
_PRODUCT_GID_PATTERN = re.compile(r"/(\d+)$")

_PRODUCT_FIELDS = """
    id
    title
    handle
    descriptionHtml
    vendor
    productType
    tags
    status
    seo { title description }
    images(first: 10) { nodes { url altText } }
    metafields(first: 20) { nodes { namespace key value } }
"""

PRODUCTS_QUERY = """
query GetProducts($first: Int!, $after: String) {
  products(first: $first, after: $after) {
    nodes { %s }
    pageInfo { hasNextPage endCursor }
  }
}
""" % _PRODUCT_FIELDS

PRODUCT_QUERY = """
query GetProduct($id: ID!) {
  product(id: $id) { %s }
}
""" % _PRODUCT_FIELDS

PRODUCTS_COUNT_QUERY = """
query GetProductsCount {
  productsCount { count }
}
"""


class ShopifyCatalogSource:
    """Shopify 店舗の商品カタログ. 同期 I/O（呼び出し側でスレッドに逃がす）."""

    def __init__(self, timeout: float = CATALOG_REQUEST_TIMEOUT) -> None:
        self.timeout = timeout

    def fetch_page(self, shop: Shop, cursor: str | None, page_size: int) -> CatalogPage:
        """商品を 1 ページ取得する.

        Args:
            shop: 対象店舗（shop_domain と access_token を使う）
            cursor: 前ページの endCursor。先頭ページは None
            page_size: 取得件数

        Returns:
            CatalogPage。最終ページなら next_cursor は None。
        """
        data = self._graphql(shop, PRODUCTS_QUERY, {"first": page_size, "after": cursor})
        products = _deep_get(data, "products") or {}
        items = [parse_product(node) for node in products.get("nodes") or []]
        page_info = products.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return CatalogPage(items=items, next_cursor=next_cursor)

    def fetch_product_by_id(self, shop: Shop, product_id: str) -> Product | None:
        data = self._graphql(
            shop, PRODUCT_QUERY, {"id": f"gid://shopify/Product/{product_id}"}
        )
        node = _deep_get(data, "product")
        return parse_product(node) if node else None

    def count_products(self, shop: Shop) -> int:
        data = self._graphql(shop, PRODUCTS_COUNT_QUERY, {})
        return int(_deep_get(data, "productsCount", "count") or 0)

    def _graphql(self, shop: Shop, query: str, variables: dict[str, Any]) -> dict:
        if not shop.access_token:
            raise CatalogUnavailableError(
                "No valid session found for shop", shop_domain=shop.shop_domain
            )

        url = SHOPIFY_GRAPHQL_URL_TEMPLATE.format(
            shop_domain=shop.shop_domain, version=SHOPIFY_API_VERSION
        )
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": shop.access_token,
        }

        try:
            resp = requests.post(
                url,
                json={"query": query, "variables": variables},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            logger.error("GraphQL 取得失敗: shop=%s, error=%s", shop.shop_domain, e)
            raise CatalogUnavailableError(
                f"GraphQL request failed: {e}", shop_domain=shop.shop_domain
            ) from e
        except ValueError as e:
            logger.error("GraphQL レスポンスが JSON ではありません: shop=%s", shop.shop_domain)
            raise CatalogUnavailableError(
                "GraphQL response is not JSON", shop_domain=shop.shop_domain
            ) from e

        if body.get("errors"):
            logger.error("GraphQL エラー: shop=%s, errors=%s", shop.shop_domain, body["errors"])
            raise CatalogUnavailableError(
                "GraphQL errors", shop_domain=shop.shop_domain, errors=body["errors"]
            )

        return body.get("data") or {}


def parse_product(node: dict) -> Product:
    """GraphQL の product ノードを Product に変換する."""
    seo = node.get("seo") or {}
    images = _deep_get(node, "images", "nodes") or []
    metafields = _deep_get(node, "metafields", "nodes") or []
    return Product(
        id=extract_product_id(node.get("id", "")),
        title=node.get("title") or "",
        handle=node.get("handle") or "",
        description_html=node.get("descriptionHtml") or "",
        vendor=node.get("vendor") or "",
        product_type=node.get("productType") or "",
        tags=tuple(node.get("tags") or ()),
        seo_title=seo.get("title"),
        seo_description=seo.get("description"),
        images=tuple(ProductImage(url=i.get("url", ""), alt_text=i.get("altText")) for i in images),
        metafields=tuple(
            Metafield(namespace=m.get("namespace", ""), key=m.get("key", ""), value=m.get("value", ""))
            for m in metafields
        ),
        available=(node.get("status") or "ACTIVE") == "ACTIVE",
    )


def extract_product_id(gid: str) -> str:
    """gid://shopify/Product/123 から 123 を取り出す. 形式外ならそのまま返す."""
    m = _PRODUCT_GID_PATTERN.search(gid)
    if m:
        return m.group(1)
    return gid


def _deep_get(d: dict, *keys: str):
    """ネストされた dict から安全に値を取得する."""
    for key in keys:
        if not isinstance(d, dict):
            return None
        d = d.get(key)
    return d
