"""
録音エージェントモジュール (Capture Agent Module)

通話状態の通知を受けて 1 通話につき 1 つの録音ファイルを作成し、
終了後にアップロードキューへ引き渡します。

音声ソースは優先順位表 SOURCE_PRIORITY の順に試行し、最後に成功した
ソースを次回の最初の候補にします。録音の失敗が通話に影響することはありません。
"""

import os
import re
import shutil
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple, Union

from .audio_backend import AudioBackend, CaptureSourceUnavailable, CaptureStream
from .events import CaptureFailed, CaptureStarted, CaptureStopped, EventBus
from .log import get_logger
from .models import (
    AudioSourcePreference,
    CallState,
    CaptureParameters,
    CaptureSession,
    CaptureSource,
    CaptureState,
)
from .task_store import TaskStoreError


# 通話の両者を取得できるもの（最良）から、端末のマイクのみ（どの端末でも動作）まで
SOURCE_PRIORITY: Tuple[CaptureSource, ...] = (
    CaptureSource.VOICE_CALL,
    CaptureSource.VOICE_COMMUNICATION,
    CaptureSource.VOICE_RECOGNITION,
    CaptureSource.MIC,
)

DEFAULT_MIN_FREE_STORAGE_BYTES = 100 * 1024 * 1024


class NoCaptureSourceError(Exception):
    """
    すべての音声ソースが失敗

    Attributes:
        failures: (ソース, 失敗理由) のリスト（試行順）
    """

    def __init__(self, failures: List[Tuple[CaptureSource, str]]):
        detail = "; ".join(f"{source.value}: {reason}" for source, reason in failures)
        super().__init__(f"No capture source available ({detail})")
        self.failures = failures


def order_candidates(
    preference: AudioSourcePreference,
    candidates: Iterable[CaptureSource] = SOURCE_PRIORITY
) -> List[CaptureSource]:
    """最後に成功したソースが候補にあれば先頭に移動"""
    ordered = list(candidates)
    preferred = preference.last_working_source
    if preferred is not None and preferred in ordered:
        ordered.remove(preferred)
        ordered.insert(0, preferred)
    return ordered


def negotiate_source(
    backend: AudioBackend,
    params: CaptureParameters,
    preference: AudioSourcePreference,
    file_path: str,
    candidates: Iterable[CaptureSource] = SOURCE_PRIORITY
) -> Tuple[CaptureStream, CaptureSource, AudioSourcePreference]:
    """
    音声ソースを選択して録音を開始

    候補を順に開いて開始し、最初に成功したソースを採用します。
    失敗した候補が残した部分ファイルは削除します。

    Args:
        backend: 音声バックエンド
        params: 録音パラメータ（すべての候補で同じ値）
        preference: 現在の優先設定
        file_path: 出力ファイルのパス
        candidates: 候補の優先順位

    Returns:
        (開始済みストリーム, 採用したソース, 更新後の優先設定) のタプル

    Raises:
        NoCaptureSourceError: すべての候補が失敗した場合
    """
    logger = get_logger(__name__)
    failures: List[Tuple[CaptureSource, str]] = []

    for source in order_candidates(preference, candidates):
        stream = None
        try:
            stream = backend.open_stream(source, params, file_path)
            stream.start()
        except (CaptureSourceUnavailable, OSError) as e:
            reason = e.reason if isinstance(e, CaptureSourceUnavailable) else str(e)
            failures.append((source, reason))
            logger.info("capture_source_unavailable", source=source.value, reason=reason)
            if stream is not None:
                stream.close()
            _remove_file(file_path)
            continue

        logger.info("capture_source_selected", source=source.value, attempts=len(failures) + 1)
        return stream, source, preference.with_source(source)

    raise NoCaptureSourceError(failures)


def _remove_file(path: Optional[str]) -> None:
    if path and os.path.exists(path):
        os.remove(path)


def capture_filename(started_at: datetime, phone_number: Optional[str], container: str) -> str:
    """call_<エポックミリ秒>_<電話番号の数字>.<コンテナ>"""
    digits = re.sub(r"\D", "", phone_number or "") or "unknown"
    return f"call_{int(started_at.timestamp() * 1000)}_{digits}.{container}"


class CaptureAgent:
    """
    通話状態に従って録音を制御するエージェント

    OFFHOOK で録音開始、IDLE で録音終了、RINGING は記録のみ行います。
    handle_call_state は例外を送出しません。

    Attributes:
        backend: 音声バックエンド
        preference_store: 優先設定の永続化先 (get_preference / save_preference)
        upload_queue: 完了ファイルの引き渡し先 (enqueue)
        events: イベントバス
        capture_dir: 録音ファイルの出力ディレクトリ
        params: 録音パラメータ
    """

    def __init__(
        self,
        backend: AudioBackend,
        preference_store,
        upload_queue,
        events: Optional[EventBus] = None,
        capture_dir: str = "captures",
        params: Optional[CaptureParameters] = None,
        min_file_bytes: int = 1,
        min_free_storage_bytes: int = DEFAULT_MIN_FREE_STORAGE_BYTES
    ):
        self.backend = backend
        self.preference_store = preference_store
        self.upload_queue = upload_queue
        self.events = events or EventBus()
        self.capture_dir = capture_dir
        self.params = params or CaptureParameters()
        self.min_file_bytes = min_file_bytes
        self.min_free_storage_bytes = min_free_storage_bytes
        self.logger = get_logger(__name__)

        self._session: Optional[CaptureSession] = None
        self._stream: Optional[CaptureStream] = None
        self._started_monotonic = 0.0
        self._lock = threading.RLock()

        os.makedirs(self.capture_dir, exist_ok=True)

    @property
    def current_session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def is_capturing(self) -> bool:
        return self._session is not None and self._session.state == CaptureState.CAPTURING

    def handle_call_state(
        self,
        state: Union[CallState, str],
        owner_record_id: Optional[str] = None,
        phone_number: Optional[str] = None
    ) -> None:
        """
        通話状態の変化を処理

        Args:
            state: 通話状態
            owner_record_id: 録音を紐付ける外部レコード ID（OFFHOOK 時）
            phone_number: 通話相手の電話番号（OFFHOOK 時、ファイル名に使用）
        """
        try:
            call_state = CallState(state)
        except ValueError:
            self.logger.warning("unknown_call_state", call_state=str(state))
            return

        with self._lock:
            try:
                self.logger.debug("call_state_received", call_state=call_state.value)

                if call_state == CallState.OFFHOOK:
                    if self.is_capturing:
                        self.logger.debug("capture_already_active", session_id=self._session.id)
                        return
                    self._start(owner_record_id, phone_number)
                elif call_state == CallState.IDLE:
                    if self.is_capturing:
                        self._stop()
                else:
                    self.logger.info("call_ringing_observed")
            except Exception as e:
                # 録音の失敗は通話状態の通知元に伝播させない
                self.logger.error(
                    "call_state_handling_failed",
                    call_state=str(state),
                    error=str(e),
                    exc_info=True
                )
                self._fail(str(e))

    def cancel_capture(self) -> None:
        """
        録音を取り消す

        部分ファイルを削除し、capture-stopped の通知もアップロードも行いません。
        """
        with self._lock:
            if not self.is_capturing:
                return
            session = self._session
            try:
                self._close_stream()
            finally:
                _remove_file(session.local_file_path)
                session.state = CaptureState.STOPPED
                session.stopped_at = datetime.now(timezone.utc)

            self.logger.info("capture_canceled", session_id=session.id)

    def _check_free_storage(self) -> None:
        try:
            free = shutil.disk_usage(self.capture_dir).free
        except OSError:
            self.logger.warning("free_storage_check_failed", capture_dir=self.capture_dir, exc_info=True)
            return
        if free < self.min_free_storage_bytes:
            self.logger.warning(
                "low_storage",
                free_bytes=free,
                threshold_bytes=self.min_free_storage_bytes
            )

    def _load_preference(self) -> AudioSourcePreference:
        try:
            return self.preference_store.get_preference()
        except TaskStoreError:
            self.logger.warning("source_preference_load_failed", exc_info=True)
            return AudioSourcePreference()

    def _start(self, owner_record_id: Optional[str], phone_number: Optional[str]) -> None:
        now = datetime.now(timezone.utc)
        session = CaptureSession(
            id=uuid.uuid4().hex,
            owner_record_id=owner_record_id,
            phone_number=phone_number,
            local_file_path=os.path.join(
                self.capture_dir, capture_filename(now, phone_number, self.params.container)
            ),
        )
        self._session = session
        self._check_free_storage()

        preference = self._load_preference()
        try:
            stream, source, updated = negotiate_source(
                self.backend, self.params, preference, session.local_file_path
            )
        except NoCaptureSourceError as e:
            session.state = CaptureState.FAILED
            session.stopped_at = datetime.now(timezone.utc)
            _remove_file(session.local_file_path)
            self.logger.error("capture_failed", session_id=session.id, reason=str(e))
            self.events.emit(CaptureFailed(session_id=session.id, reason=str(e)))
            return

        if updated != preference:
            try:
                self.preference_store.save_preference(updated)
            except TaskStoreError:
                self.logger.warning("source_preference_save_failed", source=source.value, exc_info=True)

        self._stream = stream
        self._started_monotonic = time.monotonic()
        session.state = CaptureState.CAPTURING
        session.audio_source = source
        session.started_at = now

        self.logger.info(
            "capture_started",
            session_id=session.id,
            source=source.value,
            file_path=session.local_file_path,
            owner_record_id=owner_record_id
        )
        self.events.emit(CaptureStarted(session_id=session.id, source=source.value))

    def _stop(self) -> None:
        session = self._session
        stream = self._stream
        try:
            stream.stop()
        finally:
            self._close_stream()

        session.state = CaptureState.STOPPED
        session.stopped_at = datetime.now(timezone.utc)

        size_bytes = os.path.getsize(session.local_file_path) if os.path.exists(session.local_file_path) else 0
        duration_ms = stream.duration_ms
        if duration_ms is None:
            duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)

        self.logger.info(
            "capture_stopped",
            session_id=session.id,
            file_path=session.local_file_path,
            duration_ms=duration_ms,
            size_bytes=size_bytes
        )
        self.events.emit(CaptureStopped(
            session_id=session.id,
            file_path=session.local_file_path,
            duration_ms=duration_ms,
            size_bytes=size_bytes
        ))

        if size_bytes < self.min_file_bytes:
            self.logger.warning("capture_discarded_empty", session_id=session.id, size_bytes=size_bytes)
            _remove_file(session.local_file_path)
            return

        if not session.owner_record_id:
            self.logger.warning("capture_discarded_no_owner", session_id=session.id)
            _remove_file(session.local_file_path)
            return

        try:
            task = self.upload_queue.enqueue(session.local_file_path, session.owner_record_id)
        except TaskStoreError:
            # ファイルは手動復旧のために残す
            self.logger.error(
                "capture_handoff_failed",
                session_id=session.id,
                file_path=session.local_file_path,
                exc_info=True
            )
            return

        self.logger.info("capture_handed_off", session_id=session.id, task_id=task.id)

    def _close_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            stream.close()

    def _fail(self, reason: str) -> None:
        session = self._session
        if session is None or session.state not in (CaptureState.CAPTURING, CaptureState.IDLE):
            return

        try:
            self._close_stream()
            _remove_file(session.local_file_path)
        except Exception:
            self.logger.warning("capture_cleanup_failed", session_id=session.id, exc_info=True)

        session.state = CaptureState.FAILED
        session.stopped_at = datetime.now(timezone.utc)
        self.events.emit(CaptureFailed(session_id=session.id, reason=reason))
