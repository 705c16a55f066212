"""Order Service — ロギング設定"""

import logging
import sys

from .config import Settings


def setup_logging(settings: Settings) -> None:
    """ルートロガーにコンソール出力を設定する (lifespan から一度だけ呼ぶ)。"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level, logging.INFO))

    if not any(getattr(h, "_storefront_orders", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(settings.log_format))
        handler._storefront_orders = True
        root.addHandler(handler)

    # SQL や HTTP クライアントの詳細ログは抑える
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
