"""Surfaced エンジン — メインエントリーポイント.

使い方:
  python -m surfaced.main audit <shop_id>
  python -m surfaced.main summary <shop_id>
  python -m surfaced.main visibility <shop_id> [クエリ ...]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import asdict
from datetime import datetime

from surfaced.catalog import ShopifyCatalogSource
from surfaced.config import LOG_DIR, load_environment
from surfaced.db import SupabaseStore
from surfaced.errors import SurfacedError
from surfaced.platforms import build_registry
from surfaced.service import SurfacedService


def setup_logging() -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / f"surfaced_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def build_service() -> SurfacedService:
    store = SupabaseStore()
    return SurfacedService(
        store=store,
        catalog=ShopifyCatalogSource(),
        registry=build_registry(),
        environment=load_environment(),
    )


def _print(result) -> None:
    print(json.dumps(asdict(result), ensure_ascii=False, indent=2, default=str))


def run(argv: list[str] | None = None) -> int:
    """メイン処理."""
    parser = argparse.ArgumentParser(prog="surfaced")
    parser.add_argument("command", choices=["audit", "summary", "visibility"])
    parser.add_argument("shop_id")
    parser.add_argument("queries", nargs="*")
    args = parser.parse_args(argv)

    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("=== %s 開始 ===", args.command)
    start_time = time.time()

    service = build_service()
    try:
        if args.command == "audit":
            _print(asyncio.run(service.run_audit(args.shop_id)))
        elif args.command == "summary":
            _print(service.get_audit_summary(args.shop_id))
        else:
            run_result = asyncio.run(
                service.run_visibility_check(args.shop_id, args.queries or None)
            )
            _print(run_result)
    except SurfacedError as e:
        logger.error("失敗: %s", e.to_dict())
        return 1

    elapsed = time.time() - start_time
    logger.info("=== %s 完了 === 所要時間: %.1f 秒", args.command, elapsed)
    return 0


if __name__ == "__main__":
    sys.exit(run())
