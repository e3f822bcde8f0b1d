"""
ロギングモジュール (Logging Module)

structlog による JSON 構造化ロギングを設定します。
サーバー・端末の両方から利用されます。
"""

import logging
import sys

import structlog


def configure_structlog(log_level: str = "INFO") -> None:
    """
    structlog を設定

    JSON フォーマットの構造化ロギングを設定します。
    すべてのログ出力は timestamp, level, event フィールドを含みます。

    Args:
        log_level: ログレベル (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得

    Args:
        name: ロガー名

    Returns:
        構造化ロガーインスタンス
    """
    return structlog.get_logger(name)
