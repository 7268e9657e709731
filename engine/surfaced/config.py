"""設定モジュール — 環境変数・定数定義."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- Supabase ---
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.getenv("SUPABASE_SECRET_KEY", "")
SUPABASE_SCHEMA = os.getenv("SUPABASE_SCHEMA", "surfaced")

# --- Shopify ---
SHOPIFY_API_VERSION = "2025-01"
SHOPIFY_GRAPHQL_URL_TEMPLATE = "https://{shop_domain}/admin/api/{version}/graphql.json"
CATALOG_PAGE_SIZE = 50  # Shopify の 1 リクエスト上限は 250
CATALOG_REQUEST_TIMEOUT = 20  # 秒

# --- AI プラットフォーム ---
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
PERPLEXITY_API_KEY: str = os.getenv("PERPLEXITY_API_KEY", "")
GOOGLE_AI_API_KEY: str = os.getenv("GOOGLE_AI_API_KEY", "")
OPENROUTER_API_KEY: str = os.getenv("OPENROUTER_API_KEY", "")

OPENAI_BASE_URL = "https://api.openai.com/v1"
PERPLEXITY_BASE_URL = "https://api.perplexity.ai"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# プラットフォーム -> モデル名
PLATFORM_MODELS = {
    "chatgpt": os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
    "perplexity": "sonar",
    "gemini": os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
    "claude": "anthropic/claude-3.5-haiku",
    "deepseek": "deepseek/deepseek-chat",
    "llama": "meta-llama/llama-3.3-70b-instruct",
    "mistral": "mistralai/mistral-small",
    "qwen": "qwen/qwen-2.5-72b-instruct",
}

SHOPPING_ASSISTANT_PROMPT = (
    "You are a helpful shopping assistant. Provide detailed, honest "
    "recommendations based on your knowledge. Include specific brand names "
    "and stores when relevant."
)

PLATFORM_TIMEOUT = float(os.getenv("PLATFORM_TIMEOUT", "30"))  # 秒
PLATFORM_MAX_TOKENS = 1000
PLATFORM_TEMPERATURE = 0.7
# オーケストレータ側の再試行回数（アダプタ内では再試行しない）
PLATFORM_RETRIES = int(os.getenv("PLATFORM_RETRIES", "0"))

# --- 可視性チェック ---
DEFAULT_QUERY_LIMIT = 3
HISTORY_LIMIT = 50

# --- レート制限（固定ウィンドウ） ---
PUBLIC_RATE_LIMIT = 100  # 回 / ウィンドウ
ADMIN_RATE_LIMIT = 1000
RATE_LIMIT_WINDOW_SECONDS = 60

# --- ログ ---
LOG_DIR = Path(os.getenv("SURFACED_LOG_DIR", Path(__file__).resolve().parent.parent / "logs"))


@dataclass(frozen=True)
class Environment:
    """実行環境. 開発用ショップの迂回はここでのみ判定する."""

    is_development: bool = False
    dev_shop: str | None = None


def load_environment() -> Environment:
    """APP_ENV から Environment を組み立てる.

    APP_ENV=production のときは DEV_SHOP が設定されていても開発扱いにしない。
    """
    app_env = os.getenv("APP_ENV", "production").strip().lower()
    if app_env == "production":
        return Environment(is_development=False, dev_shop=None)
    return Environment(
        is_development=app_env in ("development", "dev", "local"),
        dev_shop=os.getenv("DEV_SHOP") or None,
    )
