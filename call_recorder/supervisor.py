"""
録音サービスモジュール (Capture Service Module)

録音エージェントを専用のバックグラウンドスレッドで動作させます。
通話状態の通知はキューで受け取り、前面アプリケーションのライフサイクルから
切り離して処理します。ループが異常終了した場合は、一定時間内の回数を上限として
再起動します。
"""

import queue
import threading
import time
from collections import deque
from typing import Deque, Optional, Union

from .log import get_logger
from .models import CallState


_STOP = object()


class CaptureService:
    """
    録音エージェントを監視付きで実行するサービス

    Attributes:
        agent: handle_call_state を持つ録音エージェント
        max_restarts: restart_window_seconds 内に許容する再起動回数
        restart_window_seconds: 再起動回数を数える時間幅
    """

    def __init__(self, agent, max_restarts: int = 5, restart_window_seconds: float = 60.0):
        self.agent = agent
        self.max_restarts = max_restarts
        self.restart_window_seconds = restart_window_seconds
        self.logger = get_logger(__name__)

        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._restarts: Deque[float] = deque()
        self._stopping = threading.Event()
        self.restart_count = 0
        self.gave_up = False

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return

        self._stopping.clear()
        self.gave_up = False
        self._thread = threading.Thread(
            target=self._supervise,
            name="capture-service",
            daemon=True
        )
        self._thread.start()
        self.logger.info("capture_service_started")

    def submit(
        self,
        state: Union[CallState, str],
        owner_record_id: Optional[str] = None,
        phone_number: Optional[str] = None
    ) -> None:
        """
        通話状態の通知を登録（呼び出し元をブロックしない）

        Args:
            state: 通話状態
            owner_record_id: 外部レコード ID
            phone_number: 通話相手の電話番号
        """
        if not self.is_running:
            self.logger.warning("capture_service_not_running", call_state=str(state))
        self._queue.put((state, owner_record_id, phone_number))

    def join_pending(self) -> None:
        """登録済みの通知がすべて処理されるまで待機"""
        self._queue.join()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._thread is None:
            return

        self._stopping.set()
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        self.logger.info("capture_service_stopped")

    def _supervise(self) -> None:
        while not self._stopping.is_set():
            try:
                self._run_loop()
                return
            except Exception as e:
                now = time.monotonic()
                self._restarts.append(now)
                while self._restarts and now - self._restarts[0] > self.restart_window_seconds:
                    self._restarts.popleft()

                if len(self._restarts) > self.max_restarts:
                    self.gave_up = True
                    self.logger.error(
                        "capture_service_gave_up",
                        restarts=len(self._restarts),
                        window_seconds=self.restart_window_seconds,
                        error=str(e),
                        exc_info=True
                    )
                    return

                self.restart_count += 1
                self.logger.warning(
                    "capture_service_restarted",
                    restart_count=self.restart_count,
                    error=str(e),
                    exc_info=True
                )

    def _run_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                state, owner_record_id, phone_number = item
                self.agent.handle_call_state(
                    state,
                    owner_record_id=owner_record_id,
                    phone_number=phone_number
                )
            finally:
                self._queue.task_done()
