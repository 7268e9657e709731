"""商品 1 件の AI 対応度スコアリング.

100 点から減点する方式。減点表（上から順に評価）:

  NO_DESCRIPTION      説明文なし                 critical  -40
  SHORT_DESCRIPTION   説明文 50 文字未満          critical  -25
  BRIEF_DESCRIPTION   説明文 150 文字未満         warning   -10
  NO_IMAGES           画像なし                   critical  -30
  MISSING_ALT_TEXT    alt なし画像 1 枚ごと       warning   -5（最大 -15）
  NO_SEO_TITLE        SEO タイトルなし            warning   -5
  NO_SEO_DESCRIPTION  SEO 説明文なし              warning   -5
  NO_PRODUCT_TYPE     商品タイプなし              warning   -5
  NO_TAGS             タグなし                   warning   -5
  NO_METAFIELDS       メタフィールドなし          info      -2
  NO_VENDOR           ベンダーなし               info      -2

品質クレジット（減点の相殺のみ。100 点は超えない）:
  説明文 300 文字以上 +5 / 画像 3 枚以上 +3 / タグ 5 個以上 +2

I/O・乱数・時刻を使わないので、同じ商品なら常に同じ結果になる。
"""

from __future__ import annotations

from dataclasses import dataclass

from bs4 import BeautifulSoup

from surfaced.models import Issue, Product

# --- 閾値 ---
SHORT_DESCRIPTION_CHARS = 50
BRIEF_DESCRIPTION_CHARS = 150
RICH_DESCRIPTION_CHARS = 300
MANY_IMAGES = 3
MANY_TAGS = 5
ALT_TEXT_PENALTY_PER_IMAGE = 5
ALT_TEXT_PENALTY_MAX_IMAGES = 3

# --- スコア帯 ---
CRITICAL_BELOW = 40
WARNING_BELOW = 70
INFO_BELOW = 90


@dataclass(frozen=True)
class ScoreResult:
    ai_score: int
    issues: list[Issue]
    has_images: bool
    has_description: bool
    has_metafields: bool
    description_length: int


def description_text(html: str | None) -> str:
    """説明文 HTML から表示テキストを取り出す."""
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text(" ", strip=True)


def severity_bucket(score: int) -> str | None:
    """スコアを重大度の帯に振り分ける. 90 点以上は None."""
    if score < CRITICAL_BELOW:
        return "critical"
    if score < WARNING_BELOW:
        return "warning"
    if score < INFO_BELOW:
        return "info"
    return None


def score_product(product: Product) -> ScoreResult:
    """商品 1 件を採点する."""
    issues: list[Issue] = []
    deduction = 0

    text = description_text(product.description_html)
    description_length = len(text)
    images = product.images
    has_images = len(images) > 0
    has_description = description_length > 0
    has_metafields = len(product.metafields) > 0

    if not has_description:
        issues.append(Issue(
            "critical", "NO_DESCRIPTION",
            "Product has no description. AI cannot recommend products without descriptions.",
            "description",
        ))
        deduction += 40
    elif description_length < SHORT_DESCRIPTION_CHARS:
        issues.append(Issue(
            "critical", "SHORT_DESCRIPTION",
            f"Description is too short ({description_length} chars). "
            "Aim for at least 150 characters.",
            "description",
        ))
        deduction += 25
    elif description_length < BRIEF_DESCRIPTION_CHARS:
        issues.append(Issue(
            "warning", "BRIEF_DESCRIPTION",
            f"Description could be longer ({description_length} chars). "
            "200+ characters recommended.",
            "description",
        ))
        deduction += 10

    if not has_images:
        issues.append(Issue(
            "critical", "NO_IMAGES",
            "Product has no images. Visual content helps AI understand your product.",
            "images",
        ))
        deduction += 30
    else:
        missing_alt = sum(1 for img in images if not (img.alt_text or "").strip())
        if missing_alt:
            issues.append(Issue(
                "warning", "MISSING_ALT_TEXT",
                f"{missing_alt} image(s) missing alt text. Alt text helps AI understand images.",
                "images",
            ))
            deduction += ALT_TEXT_PENALTY_PER_IMAGE * min(missing_alt, ALT_TEXT_PENALTY_MAX_IMAGES)

    if not (product.seo_title or "").strip():
        issues.append(Issue(
            "warning", "NO_SEO_TITLE",
            "No SEO title set. Custom SEO titles help AI understand your product better.",
            "seo.title",
        ))
        deduction += 5

    if not (product.seo_description or "").strip():
        issues.append(Issue(
            "warning", "NO_SEO_DESCRIPTION",
            "No SEO description set. Meta descriptions provide context to AI.",
            "seo.description",
        ))
        deduction += 5

    if not product.product_type.strip():
        issues.append(Issue(
            "warning", "NO_PRODUCT_TYPE",
            "No product type set. Product categorization helps AI recommendations.",
            "productType",
        ))
        deduction += 5

    if not product.tags:
        issues.append(Issue(
            "warning", "NO_TAGS",
            "No tags set. Tags help AI understand product attributes.",
            "tags",
        ))
        deduction += 5

    if not has_metafields:
        issues.append(Issue(
            "info", "NO_METAFIELDS",
            "Consider adding custom metafields for richer product data.",
            "metafields",
        ))
        deduction += 2

    if not product.vendor.strip():
        issues.append(Issue(
            "info", "NO_VENDOR",
            "No vendor set. Brand information can improve AI recommendations.",
            "vendor",
        ))
        deduction += 2

    credit = 0
    if description_length >= RICH_DESCRIPTION_CHARS:
        credit += 5
    if len(images) >= MANY_IMAGES:
        credit += 3
    if len(product.tags) >= MANY_TAGS:
        credit += 2

    net = max(0, min(100, deduction - credit))

    return ScoreResult(
        ai_score=100 - net,
        issues=issues,
        has_images=has_images,
        has_description=has_description,
        has_metafields=has_metafields,
        description_length=description_length,
    )
