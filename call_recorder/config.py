"""
設定管理モジュール (Configuration Management Module)

環境変数からサーバー側・端末側の設定を読み込み、検証を行います。
"""

from dataclasses import dataclass, field
from typing import Tuple
import os
import tempfile


class ConfigurationError(Exception):
    """設定エラー例外クラス"""
    pass


VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _validate_log_level(log_level: str) -> None:
    if log_level.upper() not in VALID_LOG_LEVELS:
        raise ConfigurationError(
            f"LOG_LEVEL は {VALID_LOG_LEVELS} のいずれかである必要があります: {log_level}"
        )


def _int_env(name: str, default: int) -> int:
    """整数の環境変数を読み込む（変換できない場合は ConfigurationError）"""
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} は整数である必要があります: {raw}")


def parse_retry_delays(raw: str) -> Tuple[float, ...]:
    """
    リトライ間隔の文字列を解析

    "5,15,45" のようなカンマ区切りの秒数をタプルに変換します。

    Args:
        raw: カンマ区切りの秒数

    Returns:
        秒数のタプル

    Raises:
        ConfigurationError: 数値に変換できない、または空の場合
    """
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    if not parts:
        raise ConfigurationError("UPLOAD_RETRY_DELAYS が空です")
    try:
        delays = tuple(float(p) for p in parts)
    except ValueError:
        raise ConfigurationError(f"UPLOAD_RETRY_DELAYS の形式が不正です: {raw}")
    if any(d <= 0 for d in delays):
        raise ConfigurationError(f"UPLOAD_RETRY_DELAYS は正の値である必要があります: {raw}")
    return delays


@dataclass
class ServerConfig:
    """
    サーバー設定

    アップロードセッションの一時ディレクトリ、録音ファイルの保存先、
    メタデータ DB の場所などを保持します。
    """
    recordings_dir: str
    upload_temp_dir: str
    database_path: str
    max_chunk_bytes: int
    session_ttl_seconds: int
    log_level: str

    DEFAULT_RECORDINGS_DIR: str = field(default="recordings", init=False, repr=False)
    DEFAULT_DATABASE_PATH: str = field(default="call_recorder.db", init=False, repr=False)
    DEFAULT_MAX_CHUNK_BYTES: int = field(default=8 * 1024 * 1024, init=False, repr=False)
    DEFAULT_SESSION_TTL_SECONDS: int = field(default=24 * 60 * 60, init=False, repr=False)
    DEFAULT_LOG_LEVEL: str = field(default="INFO", init=False, repr=False)

    @classmethod
    def from_env(cls) -> 'ServerConfig':
        """
        環境変数からサーバー設定を読み込む

        オプションの環境変数:
            - RECORDINGS_DIR: 録音ファイル保存ディレクトリ (デフォルト: recordings)
            - UPLOAD_TEMP_DIR: セッション一時ディレクトリ (デフォルト: <tmp>/call_recorder_uploads)
            - DATABASE_PATH: メタデータ DB (デフォルト: call_recorder.db)
            - MAX_CHUNK_BYTES: 1 チャンクの最大サイズ (デフォルト: 8MiB)
            - SESSION_TTL_SECONDS: 放置セッションの保持期間 (デフォルト: 86400)
            - LOG_LEVEL: ログレベル (デフォルト: INFO)

        Returns:
            ServerConfig: 設定オブジェクト

        Raises:
            ConfigurationError: 設定値が不正な場合
        """
        default_temp_dir = os.path.join(tempfile.gettempdir(), "call_recorder_uploads")

        config = cls(
            recordings_dir=os.environ.get("RECORDINGS_DIR", "recordings"),
            upload_temp_dir=os.environ.get("UPLOAD_TEMP_DIR", default_temp_dir),
            database_path=os.environ.get("DATABASE_PATH", "call_recorder.db"),
            max_chunk_bytes=_int_env("MAX_CHUNK_BYTES", 8 * 1024 * 1024),
            session_ttl_seconds=_int_env("SESSION_TTL_SECONDS", 24 * 60 * 60),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        設定の妥当性を検証

        Raises:
            ConfigurationError: 設定が欠落または無効な場合
        """
        missing_fields = []
        if not self.recordings_dir:
            missing_fields.append("RECORDINGS_DIR")
        if not self.upload_temp_dir:
            missing_fields.append("UPLOAD_TEMP_DIR")
        if not self.database_path:
            missing_fields.append("DATABASE_PATH")
        if missing_fields:
            raise ConfigurationError(
                f"必須の設定が欠落しています。以下の環境変数を設定してください: "
                f"{', '.join(missing_fields)}"
            )

        if self.max_chunk_bytes <= 0:
            raise ConfigurationError(
                f"MAX_CHUNK_BYTES は正の整数である必要があります: {self.max_chunk_bytes}"
            )
        if self.session_ttl_seconds <= 0:
            raise ConfigurationError(
                f"SESSION_TTL_SECONDS は正の整数である必要があります: {self.session_ttl_seconds}"
            )
        _validate_log_level(self.log_level)


@dataclass
class ClientConfig:
    """
    端末側設定

    録音パラメータ、アップロードキューのリトライ方針、
    アップロード先サーバーなどを保持します。
    """
    upload_server_url: str
    caller_id: str
    database_path: str
    capture_dir: str
    chunk_size: int
    max_attempts: int
    retry_delays: Tuple[float, ...]
    upload_workers: int
    request_timeout: float
    sample_rate: int
    bit_rate: int
    channels: int
    container: str
    min_free_storage_bytes: int
    log_level: str

    DEFAULT_CHUNK_SIZE: int = field(default=1024 * 1024, init=False, repr=False)
    DEFAULT_MAX_ATTEMPTS: int = field(default=3, init=False, repr=False)
    DEFAULT_RETRY_DELAYS: str = field(default="5,15,45", init=False, repr=False)
    DEFAULT_UPLOAD_WORKERS: int = field(default=2, init=False, repr=False)
    DEFAULT_SAMPLE_RATE: int = field(default=44100, init=False, repr=False)
    DEFAULT_BIT_RATE: int = field(default=128000, init=False, repr=False)
    DEFAULT_CONTAINER: str = field(default="ogg", init=False, repr=False)

    @classmethod
    def from_env(cls) -> 'ClientConfig':
        """
        環境変数から端末側設定を読み込む

        必須の環境変数:
            - UPLOAD_SERVER_URL: アップロード先サーバーのベース URL
            - CALLER_ID: 認証済みの発信者 ID

        オプションの環境変数:
            - CLIENT_DATABASE_PATH: タスク DB (デフォルト: call_recorder_client.db)
            - CAPTURE_DIR: 録音ファイルの出力先 (デフォルト: captures)
            - CHUNK_SIZE: チャンクサイズ (デフォルト: 1MiB)
            - UPLOAD_MAX_ATTEMPTS: 最大リトライ回数 (デフォルト: 3)
            - UPLOAD_RETRY_DELAYS: リトライ間隔（秒、カンマ区切り） (デフォルト: 5,15,45)
            - UPLOAD_WORKERS: 同時アップロード数 (デフォルト: 2)
            - REQUEST_TIMEOUT: HTTP タイムアウト秒 (デフォルト: 30)
            - SAMPLE_RATE / BIT_RATE / CHANNELS / CONTAINER: 録音パラメータ
            - MIN_FREE_STORAGE_BYTES: 空き容量警告のしきい値 (デフォルト: 100MiB)
            - LOG_LEVEL: ログレベル (デフォルト: INFO)

        Returns:
            ClientConfig: 設定オブジェクト

        Raises:
            ConfigurationError: 必須設定が欠落している場合
        """
        try:
            request_timeout = float(os.environ.get("REQUEST_TIMEOUT", "30"))
        except ValueError:
            raise ConfigurationError(
                f"REQUEST_TIMEOUT は数値である必要があります: {os.environ.get('REQUEST_TIMEOUT')}"
            )

        config = cls(
            upload_server_url=os.environ.get("UPLOAD_SERVER_URL", ""),
            caller_id=os.environ.get("CALLER_ID", ""),
            database_path=os.environ.get("CLIENT_DATABASE_PATH", "call_recorder_client.db"),
            capture_dir=os.environ.get("CAPTURE_DIR", "captures"),
            chunk_size=_int_env("CHUNK_SIZE", 1024 * 1024),
            max_attempts=_int_env("UPLOAD_MAX_ATTEMPTS", 3),
            retry_delays=parse_retry_delays(os.environ.get("UPLOAD_RETRY_DELAYS", "5,15,45")),
            upload_workers=_int_env("UPLOAD_WORKERS", 2),
            request_timeout=request_timeout,
            sample_rate=_int_env("SAMPLE_RATE", 44100),
            bit_rate=_int_env("BIT_RATE", 128000),
            channels=_int_env("CHANNELS", 1),
            container=os.environ.get("CONTAINER", "ogg"),
            min_free_storage_bytes=_int_env("MIN_FREE_STORAGE_BYTES", 100 * 1024 * 1024),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        設定の妥当性を検証

        Raises:
            ConfigurationError: 必須設定が欠落または無効な場合
        """
        missing_fields = []
        if not self.upload_server_url:
            missing_fields.append("UPLOAD_SERVER_URL")
        if not self.caller_id:
            missing_fields.append("CALLER_ID")
        if missing_fields:
            raise ConfigurationError(
                f"必須の設定が欠落しています。以下の環境変数を設定してください: "
                f"{', '.join(missing_fields)}"
            )

        if self.chunk_size <= 0:
            raise ConfigurationError(f"CHUNK_SIZE は正の整数である必要があります: {self.chunk_size}")
        if self.max_attempts < 0:
            raise ConfigurationError(
                f"UPLOAD_MAX_ATTEMPTS は0以上の整数である必要があります: {self.max_attempts}"
            )
        if not self.retry_delays:
            raise ConfigurationError("UPLOAD_RETRY_DELAYS が空です")
        if not 1 <= self.upload_workers <= 4:
            raise ConfigurationError(
                f"UPLOAD_WORKERS は 1 から 4 の範囲である必要があります: {self.upload_workers}"
            )
        if self.request_timeout <= 0:
            raise ConfigurationError(
                f"REQUEST_TIMEOUT は正の数である必要があります: {self.request_timeout}"
            )
        if self.sample_rate <= 0 or self.bit_rate <= 0:
            raise ConfigurationError("SAMPLE_RATE と BIT_RATE は正の整数である必要があります")
        if self.channels != 1:
            raise ConfigurationError(f"CHANNELS はモノラル (1) のみ対応しています: {self.channels}")

        valid_containers = ["m4a", "aac", "ogg", "mp3", "wav"]
        if self.container.lower() not in valid_containers:
            raise ConfigurationError(
                f"CONTAINER は {valid_containers} のいずれかである必要があります: {self.container}"
            )
        _validate_log_level(self.log_level)
