#!/usr/bin/env python3
"""
Call Recorder サーバーエントリーポイント

設定の読み込み、検証、コンポーネントの初期化を行い、
Flask 開発サーバーを起動します。

Usage:
    python main.py

Environment Variables (Optional):
    - RECORDINGS_DIR: 録音ファイル保存ディレクトリ (デフォルト: recordings)
    - UPLOAD_TEMP_DIR: アップロードセッションの一時ディレクトリ
    - DATABASE_PATH: メタデータ DB (デフォルト: call_recorder.db)
    - MAX_CHUNK_BYTES: 1 チャンクの最大サイズ (デフォルト: 8MiB)
    - SESSION_TTL_SECONDS: 放置セッションの保持期間 (デフォルト: 86400)
    - LOG_LEVEL: ログレベル (デフォルト: INFO)
    - HOST: サーバーホスト (デフォルト: 0.0.0.0)
    - PORT: サーバーポート (デフォルト: 5000)
    - DEBUG: デバッグモード (デフォルト: False)
"""

import os
import sys

from dotenv import load_dotenv

from call_recorder.app import create_app
from call_recorder.config import ConfigurationError, ServerConfig


def main() -> int:
    """
    アプリケーションのメインエントリーポイント

    Returns:
        int: 終了コード (0: 正常終了, 1: エラー終了)
    """
    load_dotenv()

    try:
        print("設定を読み込んでいます...")
        config = ServerConfig.from_env()
        print("設定の読み込みが完了しました。")

        print("アプリケーションを初期化しています...")
        app = create_app(config)
        print("アプリケーションの初期化が完了しました。")

        host = os.environ.get("HOST", "0.0.0.0")
        port = int(os.environ.get("PORT", "5000"))
        debug = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")

        print(f"サーバーを起動しています... (host={host}, port={port}, debug={debug})")
        print(f"録音ディレクトリ: {config.recordings_dir}")
        print("サーバーを停止するには Ctrl+C を押してください。")

        app.run(host=host, port=port, debug=debug)

        return 0

    except ConfigurationError as e:
        print("\n[エラー] 設定エラーが発生しました:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print("\n環境変数を確認してから再度実行してください。", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nサーバーを停止しました。")
        return 0

    except Exception as e:
        print("\n[エラー] 予期しないエラーが発生しました:", file=sys.stderr)
        print(f"  {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
