"""
イベントモジュール (Events Module)

端末側のライフサイクルイベント（録音・アップロード）を外部の UI 層へ通知する
イベントチャネルを提供します。コア処理は購読者の有無に依存しません。
"""

import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from .log import get_logger


@dataclass(frozen=True)
class CaptureStarted:
    """録音開始イベント"""
    session_id: str
    source: str

    name = "capture-started"


@dataclass(frozen=True)
class CaptureStopped:
    """録音終了イベント"""
    session_id: str
    file_path: str
    duration_ms: int
    size_bytes: int

    name = "capture-stopped"


@dataclass(frozen=True)
class CaptureFailed:
    """録音失敗イベント（通話は継続）"""
    session_id: str
    reason: str

    name = "capture-failed"


@dataclass(frozen=True)
class UploadProgress:
    """アップロード進捗イベント"""
    task_id: str
    bytes_acknowledged: int
    total_bytes: int

    name = "upload-progress"


@dataclass(frozen=True)
class UploadSucceeded:
    """
    アップロード完了イベント

    外部レイヤーはこのイベントを受けて recording_id を自身のレコードに紐付けます。
    """
    task_id: str
    owner_record_id: str
    recording_id: str
    recording_path: str

    name = "upload-succeeded"


@dataclass(frozen=True)
class UploadFailed:
    """アップロード失敗イベント（ファイルとタスクは保持）"""
    task_id: str
    owner_record_id: str
    reason: str

    name = "upload-failed"


Handler = Callable[[Any], None]


class EventBus:
    """
    同期型のイベントバス

    subscribe で登録されたハンドラーを emit 時に順番に呼び出します。
    ハンドラーの例外はログに記録され、発行元には伝播しません。
    """

    def __init__(self):
        self._handlers: Dict[Optional[str], List[Handler]] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def subscribe(self, handler: Handler, event_name: Optional[str] = None) -> Callable[[], None]:
        """
        ハンドラーを登録

        Args:
            handler: イベントを受け取る関数
            event_name: 購読するイベント名（None の場合はすべてのイベント）

        Returns:
            登録を解除する関数
        """
        with self._lock:
            self._handlers.setdefault(event_name, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_name, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def emit(self, event: Any) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.name, [])) + list(self._handlers.get(None, []))

        self.logger.debug("event_emitted", event_name=event.name, **asdict(event))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    "event_handler_failed",
                    event_name=event.name,
                    error=str(e),
                    exc_info=True
                )
