"""
端末ランタイムモジュール (Device Runtime Module)

端末側設定から録音エージェント・アップロードキュー・録音サービスを組み立てます。
"""

from dataclasses import dataclass
from typing import Optional

from .audio_backend import AudioBackend, SoundDeviceBackend
from .capture import CaptureAgent
from .config import ClientConfig
from .events import EventBus
from .log import configure_structlog, get_logger
from .models import CaptureParameters
from .supervisor import CaptureService
from .task_store import TaskStore
from .upload_client import UploadClient
from .upload_queue import UploadQueue


@dataclass
class DeviceRuntime:
    """
    端末側コンポーネント一式

    Attributes:
        config: 端末側設定
        events: イベントバス（外部 UI 層が subscribe する）
        task_store: タスクストア
        client: アップロードクライアント
        upload_queue: アップロードキュー
        agent: 録音エージェント
        service: 録音サービス（通話状態はこちらに submit する）
    """
    config: ClientConfig
    events: EventBus
    task_store: TaskStore
    client: UploadClient
    upload_queue: UploadQueue
    agent: CaptureAgent
    service: CaptureService

    def start(self) -> None:
        """録音サービスを開始し、前回の未完了タスクを再開"""
        self.service.start()
        self.upload_queue.resume_pending()

    def stop(self) -> None:
        self.service.stop()
        self.upload_queue.shutdown(wait=False)
        self.client.close()


def build_device_runtime(
    config: Optional[ClientConfig] = None,
    backend: Optional[AudioBackend] = None,
    events: Optional[EventBus] = None,
    client: Optional[UploadClient] = None
) -> DeviceRuntime:
    """
    端末ランタイムを組み立てる

    Args:
        config: 端末側設定（None の場合は環境変数から読み込み）
        backend: 音声バックエンド（None の場合は SoundDeviceBackend）
        events: イベントバス（None の場合は新規作成）
        client: アップロードクライアント（None の場合は設定から作成）

    Returns:
        DeviceRuntime
    """
    if config is None:
        config = ClientConfig.from_env()

    configure_structlog(config.log_level)
    logger = get_logger(__name__)

    events = events or EventBus()
    task_store = TaskStore(config.database_path)
    client = client or UploadClient(
        base_url=config.upload_server_url,
        caller_id=config.caller_id,
        timeout=config.request_timeout
    )
    upload_queue = UploadQueue(
        task_store=task_store,
        client=client,
        events=events,
        chunk_size=config.chunk_size,
        max_attempts=config.max_attempts,
        retry_delays=config.retry_delays,
        workers=config.upload_workers
    )
    agent = CaptureAgent(
        backend=backend or SoundDeviceBackend(),
        preference_store=task_store,
        upload_queue=upload_queue,
        events=events,
        capture_dir=config.capture_dir,
        params=CaptureParameters(
            sample_rate=config.sample_rate,
            bit_rate=config.bit_rate,
            channels=config.channels,
            container=config.container.lower()
        ),
        min_free_storage_bytes=config.min_free_storage_bytes
    )
    service = CaptureService(agent)

    logger.info(
        "device_runtime_initialized",
        upload_server_url=config.upload_server_url,
        capture_dir=config.capture_dir,
        upload_workers=config.upload_workers
    )

    return DeviceRuntime(
        config=config,
        events=events,
        task_store=task_store,
        client=client,
        upload_queue=upload_queue,
        agent=agent,
        service=service
    )
