"""
アップロードキューモジュール (Upload Queue Module)

録音ファイルをチャンク単位でサーバーへ送信し、各タスクを永続化しながら
Succeeded まで駆動します。

- セッション ID はチャンク送信前に保存する（クラッシュしても失われない）
- 次に送るチャンクはローカルの chunks_acknowledged のみで決まる
- ネットワーク障害はバックオフ付きで再試行し、上限を超えたら Failed にする
  （ファイルとタスクは残し、手動または接続回復時に途中から再開できる）
"""

import os
import threading
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from .events import EventBus, UploadFailed, UploadProgress, UploadSucceeded
from .log import get_logger
from .models import UploadStatus, UploadTask
from .task_store import TaskStore, TaskStoreError
from .upload_client import (
    IncompleteUploadError,
    SessionNotFoundError,
    TransientUploadError,
    UploadClient,
    UploadClientError,
)


DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_RETRY_DELAYS: Tuple[float, ...] = (5.0, 15.0, 45.0)


class TaskCanceledError(Exception):
    """転送中のタスクがキャンセルされた"""

    def __init__(self, task_id: str):
        super().__init__(f"Upload task canceled: {task_id}")
        self.task_id = task_id


def backoff_delay(attempt: int, retry_delays: Tuple[float, ...] = DEFAULT_RETRY_DELAYS) -> float:
    """
    attempt 回目の失敗後の待機秒数

    retry_delays を順に使い、使い切った後は最後の値を上限として使い続けます。
    """
    index = min(max(attempt, 1), len(retry_delays)) - 1
    return retry_delays[index]


class UploadQueue:
    """
    永続化されたアップロードタスクを処理するキュー

    タスク間はワーカープールで並行に、タスク内のチャンクは順番に送信します。
    同じタスクが同時に 2 つ転送されることはありません。

    Attributes:
        task_store: タスクの永続化先
        client: アップロードクライアント
        events: イベントバス
        chunk_size: 新規タスクのチャンクサイズ
        max_attempts: 一時的な失敗の最大リトライ回数
        retry_delays: バックオフの待機秒数
    """

    def __init__(
        self,
        task_store: TaskStore,
        client: UploadClient,
        events: Optional[EventBus] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_attempts: int = 3,
        retry_delays: Tuple[float, ...] = DEFAULT_RETRY_DELAYS,
        workers: int = 2,
        executor: Optional[Executor] = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer
    ):
        self.task_store = task_store
        self.client = client
        self.events = events or EventBus()
        self.chunk_size = chunk_size
        self.max_attempts = max_attempts
        self.retry_delays = tuple(retry_delays)
        self.logger = get_logger(__name__)

        self._executor = executor or ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="upload"
        )
        self._timer_factory = timer_factory
        self._timers: Dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()
        self._active: Set[str] = set()
        self._canceled: Set[str] = set()
        self._rerun: Set[str] = set()
        self._active_lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # 公開 API
    # ------------------------------------------------------------------

    def enqueue(self, file_path: str, owner_record_id: str) -> UploadTask:
        """
        ファイルをアップロードキューに追加

        Args:
            file_path: 録音ファイルのパス
            owner_record_id: 録音を紐付ける外部レコード ID

        Returns:
            作成されたタスク

        Raises:
            TaskStoreError: タスクの保存に失敗した場合
            OSError: ファイルが存在しない場合
        """
        now = datetime.now(timezone.utc)
        task = UploadTask(
            id=uuid.uuid4().hex,
            file_path=file_path,
            owner_record_id=owner_record_id,
            total_bytes=os.path.getsize(file_path),
            chunk_size=self.chunk_size,
            created_at=now,
            updated_at=now,
        )
        self.task_store.save_task(task)

        self.logger.info(
            "upload_task_enqueued",
            task_id=task.id,
            file_path=file_path,
            owner_record_id=owner_record_id,
            total_bytes=task.total_bytes,
            total_chunks=task.total_chunks
        )
        self._schedule(task.id)
        return task

    def resume_pending(self) -> int:
        """
        起動時に未完了のタスクを再スケジュール

        前回のプロセスで InProgress のまま終了したタスクも対象です。
        Succeeded のまま残ったタスクは削除します。

        Returns:
            スケジュールしたタスク数
        """
        for task in self.task_store.list_tasks([UploadStatus.SUCCEEDED]):
            self.task_store.delete_task(task.id)
            self._remove_file(task)
            self.logger.info("succeeded_upload_task_reaped", task_id=task.id)

        tasks = self.task_store.list_tasks([UploadStatus.PENDING, UploadStatus.IN_PROGRESS])
        now = datetime.now(timezone.utc)

        for task in tasks:
            delay = 0.0
            if task.next_attempt_at is not None:
                delay = max((task.next_attempt_at - now).total_seconds(), 0.0)
            self._schedule(task.id, delay)

        self.logger.info("upload_tasks_resumed", count=len(tasks))
        return len(tasks)

    def retry_failed(self, task_id: Optional[str] = None) -> int:
        """
        Failed のタスクを再試行

        リトライ回数はリセットし、受領済みのチャンクはそのまま引き継ぎます。

        Args:
            task_id: 対象のタスク（None の場合はすべての Failed タスク）

        Returns:
            再スケジュールしたタスク数
        """
        if task_id is None:
            tasks = self.task_store.list_tasks([UploadStatus.FAILED])
        else:
            task = self.task_store.get_task(task_id)
            tasks = [task] if task is not None and task.status == UploadStatus.FAILED else []

        retried = 0
        for task in tasks:
            task.status = UploadStatus.PENDING
            task.attempt = 0
            task.last_error = None
            task.next_attempt_at = None
            try:
                self._save(task)
            except TaskCanceledError:
                continue
            self._schedule(task.id)
            retried += 1

        if retried:
            self.logger.info("failed_upload_tasks_retried", count=retried)
        return retried

    def on_connectivity_restored(self) -> int:
        """
        接続回復時の処理

        バックオフ待ちのタスクを即時実行し、Failed のタスクも再試行します。
        """
        with self._timers_lock:
            waiting = list(self._timers.keys())

        for task_id in waiting:
            self._schedule(task_id)

        retried = self.retry_failed()
        self.logger.info("connectivity_restored", rescheduled=len(waiting), retried=retried)
        return len(waiting) + retried

    def cancel(self, task_id: str) -> bool:
        """
        タスクを取り消す

        タスクを削除し、サーバー側セッションのキャンセルを試みます（失敗しても無視）。
        ローカルファイルは残します。確定済みの録音は取り消せません。

        Returns:
            タスクを削除した場合はTrue
        """
        task = self.task_store.get_task(task_id)
        if task is None:
            return False

        self._cancel_timer(task_id)
        with self._active_lock:
            if task_id in self._active:
                self._canceled.add(task_id)
        self.task_store.delete_task(task_id)

        if task.session_id:
            try:
                self.client.cancel(task.session_id)
            except UploadClientError as e:
                self.logger.warning(
                    "remote_session_cancel_failed",
                    task_id=task_id,
                    session_id=task.session_id,
                    error=str(e)
                )

        self.logger.info("upload_task_canceled", task_id=task_id)
        return True

    def abandon(self, task_id: str) -> bool:
        """
        タスクを破棄し、ローカルファイルも削除（オペレーター操作）

        Returns:
            タスクを削除した場合はTrue
        """
        task = self.task_store.get_task(task_id)
        if task is None or not self.cancel(task_id):
            return False

        self._remove_file(task)
        self.logger.info("upload_task_abandoned", task_id=task_id, file_path=task.file_path)
        return True

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in UploadStatus}
        for task in self.task_store.list_tasks():
            counts[task.status.value] += 1

        with self._active_lock:
            counts["active"] = len(self._active)
        with self._timers_lock:
            counts["scheduled"] = len(self._timers)
        return counts

    def shutdown(self, wait: bool = True) -> None:
        """タイマーを止め、ワーカープールを終了（タスクは永続化されたまま残る）"""
        with self._timers_lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

        self._executor.shutdown(wait=wait)
        self.logger.info("upload_queue_shutdown")

    def process(self, task_id: str) -> Optional[UploadTask]:
        """
        タスクを 1 回転送

        通常はワーカーから呼び出されます。同じタスクが転送中の場合は転送せず、
        現在の転送が終わった直後にもう一度実行するよう記録します。

        Returns:
            転送後のタスク（転送しなかった場合は None）
        """
        with self._active_lock:
            if task_id in self._active:
                self._rerun.add(task_id)
                self.logger.debug("upload_already_active", task_id=task_id)
                return None
            self._active.add(task_id)

        try:
            task = self.task_store.get_task(task_id)
            if task is None or task.status in (UploadStatus.SUCCEEDED, UploadStatus.FAILED):
                return None
            return self._transfer(task)
        except TaskCanceledError:
            self.logger.info("upload_interrupted_by_cancel", task_id=task_id)
            return None
        finally:
            with self._active_lock:
                rerun = task_id in self._rerun and task_id not in self._canceled
                self._rerun.discard(task_id)
                self._active.discard(task_id)
                self._canceled.discard(task_id)
            if rerun:
                self.logger.debug("upload_rerun_requested", task_id=task_id)
                self._schedule(task_id)

    # ------------------------------------------------------------------
    # スケジューリング
    # ------------------------------------------------------------------

    def _schedule(self, task_id: str, delay: float = 0.0) -> None:
        with self._timers_lock:
            if self._closed:
                return
            existing = self._timers.pop(task_id, None)
            if existing is not None:
                existing.cancel()

            if delay > 0:
                timer = self._timer_factory(delay, self._fire_timer, args=(task_id,))
                timer.daemon = True
                self._timers[task_id] = timer
                timer.start()
                return

        self._executor.submit(self._run_scheduled, task_id)

    def _fire_timer(self, task_id: str) -> None:
        with self._timers_lock:
            self._timers.pop(task_id, None)
            if self._closed:
                return
        self._executor.submit(self._run_scheduled, task_id)

    def _cancel_timer(self, task_id: str) -> None:
        with self._timers_lock:
            timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()

    def _run_scheduled(self, task_id: str) -> None:
        try:
            self.process(task_id)
        except TaskStoreError:
            self.logger.error("upload_task_persistence_failed", task_id=task_id, exc_info=True)

    # ------------------------------------------------------------------
    # 転送
    # ------------------------------------------------------------------

    def _save(self, task: UploadTask) -> None:
        with self._active_lock:
            if task.id in self._canceled:
                raise TaskCanceledError(task.id)
        task.updated_at = datetime.now(timezone.utc)
        # 取り消し済み（行が削除済み）のタスクは再作成しない
        if not self.task_store.update_task(task):
            raise TaskCanceledError(task.id)

    def _transfer(self, task: UploadTask) -> UploadTask:
        task.status = UploadStatus.IN_PROGRESS
        task.next_attempt_at = None
        self._save(task)

        self.logger.info(
            "upload_started",
            task_id=task.id,
            session_id=task.session_id,
            chunks_acknowledged=task.chunks_acknowledged,
            total_chunks=task.total_chunks,
            attempt=task.attempt
        )

        try:
            result = self._run(task)
        except TransientUploadError as e:
            return self._handle_transient(task, str(e))
        except (UploadClientError, OSError) as e:
            return self._fail(task, str(e))

        return self._complete(task, result)

    def _run(self, task: UploadTask) -> Dict:
        session_restarted = False
        while True:
            try:
                self._ensure_session(task)
                self._send_chunks(task, range(task.chunks_acknowledged, task.total_chunks))
                return self._finalize(task)
            except SessionNotFoundError:
                if session_restarted:
                    raise TransientUploadError("Upload session lost again after restart")
                session_restarted = True
                self.logger.warning(
                    "upload_session_lost",
                    task_id=task.id,
                    session_id=task.session_id,
                    chunks_acknowledged=task.chunks_acknowledged
                )
                task.session_id = None
                task.chunks_acknowledged = 0
                self._save(task)

    def _ensure_session(self, task: UploadTask) -> None:
        if task.session_id is not None:
            return

        task.session_id = self.client.init(task.filename, task.owner_record_id)
        task.chunks_acknowledged = 0
        # チャンク送信前にセッション ID を保存
        self._save(task)
        self.logger.info("upload_session_initialized", task_id=task.id, session_id=task.session_id)

    def _send_chunks(self, task: UploadTask, indices: Iterable[int]) -> None:
        with open(task.file_path, "rb") as f:
            for chunk_index in indices:
                f.seek(chunk_index * task.chunk_size)
                data = f.read(task.chunk_size)
                self.client.append(task.session_id, chunk_index, data)

                if chunk_index == task.chunks_acknowledged:
                    task.chunks_acknowledged += 1
                    self._save(task)
                    self.events.emit(UploadProgress(
                        task_id=task.id,
                        bytes_acknowledged=task.bytes_acknowledged,
                        total_bytes=task.total_bytes
                    ))

    def _finalize(self, task: UploadTask) -> Dict:
        try:
            return self.client.finalize(task.session_id, task.total_chunks, task.owner_record_id)
        except IncompleteUploadError as e:
            missing = [i for i in e.missing_chunks if 0 <= i < task.total_chunks]
            self.logger.warning(
                "upload_incomplete_resending",
                task_id=task.id,
                session_id=task.session_id,
                missing_chunks=missing
            )
            if not missing:
                raise TransientUploadError(f"Server reported incomplete upload: {e}")

        self._send_chunks(task, missing)
        try:
            return self.client.finalize(task.session_id, task.total_chunks, task.owner_record_id)
        except IncompleteUploadError as e:
            raise TransientUploadError(f"Upload still incomplete after resend: {e}")

    def _complete(self, task: UploadTask, result: Dict) -> UploadTask:
        task.status = UploadStatus.SUCCEEDED
        task.last_error = None
        # サーバー側で確定済みのため、ファイルより先にタスクを削除する
        self.task_store.delete_task(task.id)
        self._remove_file(task)

        recording_id = result.get("recordingId", "")
        recording_path = result.get("recordingPath", "")
        self.logger.info(
            "upload_succeeded",
            task_id=task.id,
            owner_record_id=task.owner_record_id,
            recording_id=recording_id,
            size_bytes=result.get("sizeBytes")
        )
        self.events.emit(UploadSucceeded(
            task_id=task.id,
            owner_record_id=task.owner_record_id,
            recording_id=recording_id,
            recording_path=recording_path
        ))
        return task

    def _remove_file(self, task: UploadTask) -> None:
        try:
            if os.path.exists(task.file_path):
                os.remove(task.file_path)
        except OSError:
            self.logger.warning("local_file_removal_failed", task_id=task.id, file_path=task.file_path, exc_info=True)

    def _handle_transient(self, task: UploadTask, reason: str) -> UploadTask:
        task.attempt += 1
        task.last_error = reason

        if task.attempt > self.max_attempts:
            return self._fail(task, reason)

        delay = backoff_delay(task.attempt, self.retry_delays)
        task.status = UploadStatus.PENDING
        task.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self._save(task)

        self.logger.warning(
            "upload_retry_scheduled",
            task_id=task.id,
            attempt=task.attempt,
            delay_seconds=delay,
            chunks_acknowledged=task.chunks_acknowledged,
            error=reason
        )
        self._schedule(task.id, delay)
        return task

    def _fail(self, task: UploadTask, reason: str) -> UploadTask:
        task.status = UploadStatus.FAILED
        task.last_error = reason
        task.next_attempt_at = None
        self._save(task)

        self.logger.error(
            "upload_failed",
            task_id=task.id,
            owner_record_id=task.owner_record_id,
            attempt=task.attempt,
            chunks_acknowledged=task.chunks_acknowledged,
            error=reason
        )
        self.events.emit(UploadFailed(
            task_id=task.id,
            owner_record_id=task.owner_record_id,
            reason=reason
        ))
        return task
