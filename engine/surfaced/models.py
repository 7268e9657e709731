"""データモデル定義."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

Severity = Literal["critical", "warning", "info"]
ResponseQuality = Literal["detailed", "brief", "none"]
Sentiment = Literal["positive", "neutral", "negative"]
Platform = Literal[
    "chatgpt", "perplexity", "gemini", "claude",
    "deepseek", "llama", "mistral", "qwen",
]

# 結果の並び順はこの順で固定（完了順ではない）
PLATFORM_ORDER: tuple[str, ...] = (
    "chatgpt", "perplexity", "gemini", "claude",
    "deepseek", "llama", "mistral", "qwen",
)


# --- カタログ（外部・読み取り専用） ---


@dataclass(frozen=True)
class ProductImage:
    url: str
    alt_text: str | None = None


@dataclass(frozen=True)
class Metafield:
    namespace: str
    key: str
    value: str


@dataclass(frozen=True)
class Product:
    """カタログの 1 商品. 監査側からは変更しない."""

    id: str  # 数値部分のみ (例: 8123456789)
    title: str
    handle: str
    description_html: str = ""
    vendor: str = ""
    product_type: str = ""
    tags: tuple[str, ...] = ()
    seo_title: str | None = None
    seo_description: str | None = None
    images: tuple[ProductImage, ...] = ()
    metafields: tuple[Metafield, ...] = ()
    available: bool = True


@dataclass
class CatalogPage:
    items: list[Product]
    next_cursor: str | None  # None = 最終ページ


# --- 店舗 ---


@dataclass
class Shop:
    id: str  # uuid
    shop_domain: str  # 例: acme-store.myshopify.com
    name: str | None = None
    plan: str = "FREE"
    access_token: str | None = None
    products_count: int = 0
    ai_score: int | None = None
    last_audit_at: datetime | None = None

    @property
    def brand_name(self) -> str:
        """店舗名. 未設定ならドメインから推定する."""
        if self.name:
            return self.name
        return self.shop_domain.replace(".myshopify.com", "").replace("-", " ")

    @property
    def domain_root(self) -> str:
        return self.shop_domain.replace(".myshopify.com", "").lower()


@dataclass
class Competitor:
    id: str  # uuid
    shop_id: str
    domain: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        """名前がなければドメインから末尾の TLD（または .myshopify.com）を外したもの."""
        if self.name:
            return self.name
        domain = normalize_domain(self.domain)
        if domain.endswith(".myshopify.com"):
            return domain[: -len(".myshopify.com")]
        return domain.rsplit(".", 1)[0] if "." in domain else domain


def normalize_domain(value: str | None) -> str:
    """URL やドメイン入力をホスト名だけにする. "https://www.Foo.com/x" -> "foo.com"."""
    domain = (value or "").strip().lower()
    domain = domain.removeprefix("https://").removeprefix("http://").removeprefix("www.")
    return domain.split("/")[0].split("?")[0]


# --- 監査 ---


@dataclass(frozen=True)
class Issue:
    severity: Severity
    code: str  # 実行間で比較できる安定コード
    message: str
    field: str | None = None


@dataclass
class ProductAudit:
    """DB に書き込む商品監査レコード. (shop_id, product_id) で upsert."""

    shop_id: str
    product_id: str
    title: str
    handle: str
    ai_score: int
    issues: list[Issue]
    has_images: bool
    has_description: bool
    has_metafields: bool
    description_length: int
    last_audit_at: datetime

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["last_audit_at"] = self.last_audit_at.isoformat()
        return row


@dataclass
class PlanInfo:
    plan: str
    products_limit: int | None  # None = 無制限
    products_not_analyzed: int = 0


@dataclass
class AuditSummary:
    """店舗単位の集計. ProductAudit 全件から毎回再計算する."""

    shop_id: str
    total_products: int
    audited_products: int
    average_score: int
    issues: dict[str, int]  # スコア帯ごとの商品数
    issue_counts: dict[str, int]  # Issue の重大度ごとの件数
    last_audit_at: datetime | None
    plan_info: PlanInfo
    complete: bool = True  # 1 ページ以上処理後に中断した場合 False

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["last_audit_at"] = self.last_audit_at.isoformat() if self.last_audit_at else None
        return row


# --- 可視性 ---


@dataclass
class PlatformReply:
    """プラットフォーム 1 回分の応答. 失敗時は error が入る."""

    platform: str
    text: str = ""
    duration_ms: int = 0
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Analysis:
    is_mentioned: bool
    mention_context: str | None
    position: int | None  # 1 始まり. 言及ありでも順位不明なら None
    competitors_found: list[str]
    response_quality: ResponseQuality
    sentiment: Sentiment = "neutral"


@dataclass(frozen=True)
class VisibilityCheck:
    """可視性チェック 1 件. 追記のみで更新しない."""

    id: str  # uuid
    shop_id: str
    run_id: str
    platform: str
    query: str
    is_mentioned: bool
    mention_context: str | None
    position: int | None
    competitors_found: list[str]
    response_quality: ResponseQuality
    sentiment: Sentiment
    raw_response: str
    duration_ms: int
    checked_at: datetime

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["checked_at"] = self.checked_at.isoformat()
        return row


@dataclass
class PlatformFailure:
    platform: str
    query: str
    code: str
    message: str


@dataclass
class VisibilityRun:
    """1 回の可視性チェック実行."""

    run_id: str
    shop_id: str
    brand_name: str
    queries: list[str]
    platforms: list[str]
    state: str = "PENDING"  # PENDING -> FANNED_OUT -> AGGREGATED
    platform_status: dict[str, str] = field(default_factory=dict)  # SUCCEEDED | FAILED
    checks: list[VisibilityCheck] = field(default_factory=list)
    errors: list[PlatformFailure] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, Any]:
        mentioned = sum(1 for c in self.checks if c.is_mentioned)
        competitors: list[str] = []
        for c in self.checks:
            for name in c.competitors_found:
                if name not in competitors:
                    competitors.append(name)
        return {
            "total_checks": len(self.checks),
            "mentioned": mentioned,
            "not_mentioned": len(self.checks) - mentioned,
            "failed": len(self.errors),
            "competitors_found": competitors,
        }
