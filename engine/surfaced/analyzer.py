"""AI 応答テキストの解析.

ブランド言及の有無・リスト内の順位・競合ブランド・応答の質を判定する。
外部呼び出しも乱数も使わない純粋関数。

順位の判定順:
  1. 番号付きリスト（"1. Nike 2. Adidas" のような 1 行表記も含む）
  2. 箇条書き（-, *, •）
  3. 言及を含む文のカンマ / セミコロン区切り（3 要素以上で、2 番目以降が名前らしいもの）
どの構造にもブランドが入っていなければ、言及ありでも順位は None。

2 文字以下のブランド名（"LG" など）は単語境界でのみ一致させる。
"""

from __future__ import annotations

import re

from surfaced.models import Analysis, normalize_domain

DEFAULT_COMPETITORS: tuple[str, ...] = (
    "Amazon", "eBay", "Walmart", "Target", "Etsy", "Alibaba", "AliExpress",
    "Shopify", "Wayfair", "Overstock", "Zappos", "ASOS", "Nordstrom",
    "Macy's", "Best Buy", "Nike", "Adidas", "Zara",
)

CONTEXT_MAX_CHARS = 240
DETAILED_MIN_CHARS = 200
DETAILED_MIN_CONTEXT_WORDS = 6
MIN_VARIANT_CHARS = 3
MAX_ENTRY_WORDS = 4

_POSITIVE_WORDS = (
    "excellent", "great", "recommend", "recommended", "best", "quality",
    "trusted", "popular", "leading", "top", "premium", "outstanding",
    "innovative", "reliable",
)
_NEGATIVE_WORDS = (
    "avoid", "poor", "bad", "issue", "issues", "problem", "problems",
    "complaint", "complaints", "overpriced", "scam", "unreliable",
)
_POSITIVE_RE = re.compile(r"\b(?:%s)\b" % "|".join(_POSITIVE_WORDS))
_NEGATIVE_RE = re.compile(r"\b(?:%s)\b" % "|".join(_NEGATIVE_WORDS))

# 番号マーカー: 行頭・空白・** の直後の "1." / "1)"
_NUMBER_MARKER = re.compile(r"(?:^|(?<=[\s*#(]))(\d{1,2})[.)](?=\s)", re.MULTILINE)
_BULLET_LINE = re.compile(r"^\s*[-*•]\s+(.+)$", re.MULTILINE)
# 文の区切り. 数字直後のピリオド（リスト番号）は区切りにしない
_SENTENCE_END = re.compile(r"(?<!\d)[.!?](?=\s)|\n")
_INLINE_SEPARATOR = re.compile(r"[,;]")
_LEADING_CONJUNCTION = re.compile(r"^(?:and|or)\s+", re.IGNORECASE)
_WORD = re.compile(r"[\w'&-]+")


def brand_variants(brand_name: str, domain: str | None = None) -> list[str]:
    """照合に使うブランド表記ゆれ（小文字）."""
    base = brand_name.strip().lower()
    candidates = [base, base.replace(" ", ""), base.replace(" ", "-")]
    if domain:
        root = normalize_domain(domain).replace(".myshopify.com", "")
        if "." in root:
            root = root.rsplit(".", 1)[0]
        candidates += [root, root.replace("-", " ")]

    # ブランド名そのものは短くても残し、長さの下限は派生形にだけ掛ける
    variants: list[str] = [base] if base else []
    for v in candidates[1:]:
        if len(v) >= MIN_VARIANT_CHARS and v not in variants:
            variants.append(v)
    return variants


def analyze(
    response_text: str,
    brand_name: str,
    known_competitors: list[str] | tuple[str, ...] | None = None,
    domain: str | None = None,
) -> Analysis:
    """応答テキストを解析する.

    Args:
        response_text: AI プラットフォームの応答
        brand_name: 自ブランド名
        known_competitors: 追跡中の競合名。空なら DEFAULT_COMPETITORS を使う
        domain: 店舗ドメイン（ドメイン名での言及も拾う）
    """
    text = response_text or ""
    lower = text.lower()
    variants = brand_variants(brand_name or "", domain)

    competitors = find_competitors(text, known_competitors or DEFAULT_COMPETITORS, variants)

    index = _first_mention(lower, variants)
    if index is None:
        return Analysis(
            is_mentioned=False,
            mention_context=None,
            position=None,
            competitors_found=competitors,
            response_quality="none",
            sentiment="neutral",
        )

    start, end = _sentence_bounds(text, index)
    sentence = text[start:end].strip()

    return Analysis(
        is_mentioned=True,
        mention_context=_trim_context(text, sentence, index),
        position=find_position(text, variants),
        competitors_found=competitors,
        response_quality=_quality(text, sentence, variants),
        sentiment=_sentiment(sentence),
    )


def find_position(text: str, variants: list[str]) -> int | None:
    """リスト構造の中でブランドが最初に現れる順位（1 始まり）."""
    for entries in _numbered_lists(text):
        rank = _rank_in(entries, variants)
        if rank is not None:
            return rank

    bullets = [m.group(1) for m in _BULLET_LINE.finditer(text)]
    if len(bullets) >= 2:
        rank = _rank_in(bullets, variants)
        if rank is not None:
            return rank

    index = _first_mention(text.lower(), variants)
    if index is not None:
        start, end = _sentence_bounds(text, index)
        entries = _inline_entries(text[start:end])
        if entries:
            return _rank_in(entries, variants)

    return None


def find_competitors(
    text: str, competitors: list[str] | tuple[str, ...], brand_variants_: list[str]
) -> list[str]:
    """応答に現れた競合名を出現順で返す（自ブランドは除外）."""
    lower = text.lower()
    found: list[tuple[int, str]] = []
    seen: set[str] = set()
    for name in competitors:
        key = (name or "").strip().lower()
        if len(key) < 2 or key in seen or key in brand_variants_:
            continue
        idx = lower.find(key)
        if idx != -1:
            seen.add(key)
            found.append((idx, name.strip()))
    found.sort(key=lambda item: item[0])
    return [name for _, name in found]


def _find(lower: str, variant: str) -> int:
    if len(variant) >= MIN_VARIANT_CHARS:
        return lower.find(variant)
    m = re.search(r"(?<!\w)%s(?!\w)" % re.escape(variant), lower)
    return m.start() if m else -1


def _first_mention(lower: str, variants: list[str]) -> int | None:
    hits = [i for i in (_find(lower, v) for v in variants) if i != -1]
    return min(hits) if hits else None


def _inline_entries(sentence: str) -> list[str] | None:
    """文中の "A, B, and C" 形式の列挙を要素に分ける. 列挙でなければ None.

    先頭要素は導入句を含みうるので形を問わない。2 番目以降は大文字か数字で始まり、
    MAX_ENTRY_WORDS 語以内であること。
    """
    parts = []
    for raw in _INLINE_SEPARATOR.split(sentence):
        part = _LEADING_CONJUNCTION.sub("", raw.strip()).rstrip(".!?:").strip()
        if part:
            parts.append(part)
    if len(parts) < 3:
        return None
    for part in parts[1:]:
        if not (part[0].isupper() or part[0].isdigit()):
            return None
        if len(part.split()) > MAX_ENTRY_WORDS:
            return None
    return parts


def _numbered_lists(text: str) -> list[list[str]]:
    """番号付きリストを抽出する. 番号が 1 から連番になっているものだけを採用."""
    current: list[re.Match] = []
    groups: list[list[re.Match]] = []

    for m in _NUMBER_MARKER.finditer(text):
        n = int(m.group(1))
        if n == 1:
            if len(current) >= 2:
                groups.append(current)
            current = [m]
        elif current and n == len(current) + 1:
            current.append(m)
    if len(current) >= 2:
        groups.append(current)

    result: list[list[str]] = []
    for group in groups:
        entries: list[str] = []
        for i, m in enumerate(group):
            if i + 1 < len(group):
                end = group[i + 1].start()
            else:
                newline = text.find("\n", m.end())
                end = len(text) if newline == -1 else newline
            entries.append(text[m.end():end])
        result.append(entries)
    return result


def _rank_in(entries: list[str], variants: list[str]) -> int | None:
    for i, entry in enumerate(entries, start=1):
        lower = entry.lower()
        if any(_find(lower, v) != -1 for v in variants):
            return i
    return None


def _sentence_bounds(text: str, index: int) -> tuple[int, int]:
    start = 0
    for m in _SENTENCE_END.finditer(text, 0, index):
        start = m.end()
    m = _SENTENCE_END.search(text, index)
    end = m.end() if m else len(text)
    return start, end


def _trim_context(text: str, sentence: str, index: int) -> str:
    if sentence and len(sentence) <= CONTEXT_MAX_CHARS:
        return sentence
    start = max(0, index - CONTEXT_MAX_CHARS // 3)
    end = min(len(text), start + CONTEXT_MAX_CHARS)
    snippet = text[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def _quality(text: str, sentence: str, variants: list[str]) -> str:
    """応答の長さと、言及の周辺に説明があるかで質を分類する."""
    words = _WORD.findall(sentence.lower())
    brand_words = {w for v in variants for w in _WORD.findall(v)}
    descriptive = [w for w in words if w not in brand_words and not w.isdigit()]
    if len(text) >= DETAILED_MIN_CHARS and len(descriptive) >= DETAILED_MIN_CONTEXT_WORDS:
        return "detailed"
    return "brief"


def _sentiment(sentence: str) -> str:
    lower = sentence.lower()
    positive = len(_POSITIVE_RE.findall(lower))
    negative = len(_NEGATIVE_RE.findall(lower))
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"
