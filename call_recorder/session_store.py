"""
アップロードセッションストアモジュール (Upload Session Store Module)

チャンク単位のアップロードを 1 つの録音ファイルに組み立てます。
セッションごとに一時ディレクトリを持ち、チャンク (chunk_<index>) と
metadata.json を保存します。

- 同じインデックスへの再送は上書きされる（冪等）
- チャンクの到着順は問わず、finalize 時に番号順で連結する
- finalize の失敗時はセッションを一切変更しない
"""

import json
import os
import re
import secrets
import shutil
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .log import get_logger
from .models import Recording, UploadSession
from .recording_store import RecordingStore
from .storage import StorageError


class SessionNotFoundError(Exception):
    """
    セッションが存在しない

    ID が不明、または finalize / cancel 済みの場合に発生します。
    クライアントは init からやり直す必要があります。
    """

    def __init__(self, session_id: str):
        super().__init__(f"Upload session not found: {session_id}")
        self.session_id = session_id


class IncompleteUploadError(Exception):
    """
    チャンク数不一致

    セッションはそのまま残り、欠けているチャンクを再送して再開できます。

    Attributes:
        missing_chunks: 欠けているチャンクインデックス
        chunks_received: 受信済みのチャンク数
    """

    def __init__(self, session_id: str, missing_chunks: List[int], chunks_received: int):
        super().__init__(
            f"Incomplete upload {session_id}: {chunks_received} chunks received, "
            f"missing {missing_chunks}"
        )
        self.session_id = session_id
        self.missing_chunks = missing_chunks
        self.chunks_received = chunks_received


class OwnerMismatchError(Exception):
    """finalize 時の外部レコード ID がセッションと一致しない"""
    pass


class ChunkTooLargeError(Exception):
    """チャンクが最大サイズを超えている"""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Chunk of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


METADATA_FILENAME = "metadata.json"
CHUNK_PREFIX = "chunk_"

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


class UploadSessionStore:
    """
    チャンクアップロードのセッションを管理するクラス

    セッション間で共有される可変状態はないため、ロックはセッション単位です。

    Attributes:
        temp_dir: セッションディレクトリの親ディレクトリ
        recording_store: 確定済み録音の保存先
        max_chunk_bytes: 1 チャンクの最大サイズ
    """

    def __init__(
        self,
        temp_dir: str,
        recording_store: RecordingStore,
        max_chunk_bytes: int = 8 * 1024 * 1024
    ):
        self.temp_dir = temp_dir
        self.recording_store = recording_store
        self.max_chunk_bytes = max_chunk_bytes
        self.logger = get_logger(__name__)

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        Path(self.temp_dir).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # 内部ヘルパー
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str) -> str:
        # パストラバーサル防止のため ID の形式を検証
        if not _SESSION_ID_PATTERN.match(session_id or ""):
            raise SessionNotFoundError(session_id)
        return os.path.join(self.temp_dir, session_id)

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def _forget_lock(self, session_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(session_id, None)

    def _read_locked_metadata(self, session_id: str) -> UploadSession:
        # 存在しないセッションのロックは残さない
        try:
            return self._read_metadata(session_id)
        except SessionNotFoundError:
            self._forget_lock(session_id)
            raise

    def _read_metadata(self, session_id: str) -> UploadSession:
        metadata_path = os.path.join(self._session_dir(session_id), METADATA_FILENAME)
        try:
            with open(metadata_path, "r", encoding="utf-8") as f:
                return UploadSession.from_dict(json.load(f))
        except FileNotFoundError:
            raise SessionNotFoundError(session_id)
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Failed to read session metadata: {e}") from e

    def _write_atomic(self, path: str, data: bytes) -> None:
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)

    def _write_metadata(self, session: UploadSession) -> None:
        metadata_path = os.path.join(self._session_dir(session.id), METADATA_FILENAME)
        payload = json.dumps(session.to_dict()).encode("utf-8")
        try:
            self._write_atomic(metadata_path, payload)
        except OSError as e:
            raise StorageError(f"Failed to write session metadata: {e}") from e

    def _chunk_path(self, session_id: str, chunk_index: int) -> str:
        return os.path.join(self._session_dir(session_id), f"{CHUNK_PREFIX}{chunk_index}")

    def _calculate_upload_size(self, session_dir: str) -> int:
        total = 0
        for name in os.listdir(session_dir):
            if name.startswith(CHUNK_PREFIX) and not name.endswith(".tmp"):
                total += os.path.getsize(os.path.join(session_dir, name))
        return total

    # ------------------------------------------------------------------
    # 公開 API
    # ------------------------------------------------------------------

    def init(self, filename: str, owner_record_id: str) -> str:
        """
        アップロードセッションを作成

        同じ外部レコードに対する既存セッションがあっても、独立した新しい
        セッションを作成します。

        Args:
            filename: 元のファイル名（拡張子を最終ファイル名に引き継ぐ）
            owner_record_id: 外部レコード ID

        Returns:
            セッション ID（暗号論的乱数、URL セーフ）

        Raises:
            StorageError: ディレクトリまたはメタデータの作成に失敗した場合
        """
        session_id = secrets.token_urlsafe(16)
        session = UploadSession(
            id=session_id,
            filename=filename,
            owner_record_id=owner_record_id,
            created_at=datetime.now(timezone.utc),
        )

        try:
            os.makedirs(self._session_dir(session_id))
        except OSError as e:
            raise StorageError(f"Failed to create session directory: {e}") from e
        self._write_metadata(session)

        self.logger.info(
            "upload_session_created",
            session_id=session_id,
            filename=filename,
            owner_record_id=owner_record_id
        )
        return session_id

    def get(self, session_id: str) -> UploadSession:
        """
        セッションを取得

        Raises:
            SessionNotFoundError: セッションが存在しない場合
        """
        return self._read_metadata(session_id)

    def append(self, session_id: str, chunk_index: int, data: bytes) -> Dict[str, int]:
        """
        チャンクを追加

        chunk_<index> に書き込みます。同じインデックスへの再送は上書きされ、
        受信数は異なるインデックスの数として数えます。

        Args:
            session_id: セッション ID
            chunk_index: 0 始まりのチャンクインデックス
            data: チャンクのバイト列

        Returns:
            {"chunks_received": int, "total_bytes_so_far": int}

        Raises:
            SessionNotFoundError: セッションが存在しない場合
            ChunkTooLargeError: チャンクが最大サイズを超える場合
            ValueError: インデックスが負の場合
            StorageError: 書き込みに失敗した場合
        """
        if chunk_index < 0:
            raise ValueError(f"chunk_index must be non-negative: {chunk_index}")
        if len(data) > self.max_chunk_bytes:
            raise ChunkTooLargeError(len(data), self.max_chunk_bytes)

        session_dir = self._session_dir(session_id)
        with self._lock_for(session_id):
            session = self._read_locked_metadata(session_id)

            try:
                self._write_atomic(self._chunk_path(session_id, chunk_index), data)
            except OSError as e:
                raise StorageError(f"Failed to write chunk {chunk_index}: {e}") from e

            if chunk_index not in session.received_indices:
                session.received_indices.append(chunk_index)
            session.total_bytes = self._calculate_upload_size(session_dir)
            self._write_metadata(session)

        self.logger.debug(
            "upload_chunk_appended",
            session_id=session_id,
            chunk_index=chunk_index,
            chunk_bytes=len(data),
            chunks_received=session.chunks_received
        )
        return {
            "chunks_received": session.chunks_received,
            "total_bytes_so_far": session.total_bytes,
        }

    def finalize(
        self,
        session_id: str,
        expected_chunk_count: int,
        owner_record_id: str
    ) -> Recording:
        """
        セッションを確定し、録音を作成

        受信済みチャンク数が expected_chunk_count と一致し、かつ
        0..expected_chunk_count-1 がすべて揃っている場合のみ成功します。
        チャンクを番号順に連結して録音ストアに配置した後、
        セッションディレクトリを削除します。

        Args:
            session_id: セッション ID
            expected_chunk_count: 期待するチャンク数
            owner_record_id: 外部レコード ID（セッション作成時と一致すること）

        Returns:
            作成された Recording

        Raises:
            SessionNotFoundError: セッションが存在しない場合
            IncompleteUploadError: チャンクが揃っていない場合（セッションは維持）
            OwnerMismatchError: 外部レコード ID が一致しない場合
            StorageError: 組み立てまたは保存に失敗した場合（セッションは維持）
        """
        if expected_chunk_count < 0:
            raise ValueError(f"expected_chunk_count must be non-negative: {expected_chunk_count}")

        session_dir = self._session_dir(session_id)
        with self._lock_for(session_id):
            session = self._read_locked_metadata(session_id)

            if session.owner_record_id != owner_record_id:
                raise OwnerMismatchError(
                    f"Session {session_id} belongs to {session.owner_record_id}, not {owner_record_id}"
                )

            missing = session.missing_indices(expected_chunk_count)
            if session.chunks_received != expected_chunk_count or missing:
                self.logger.warning(
                    "upload_incomplete",
                    session_id=session_id,
                    expected_chunk_count=expected_chunk_count,
                    chunks_received=session.chunks_received,
                    missing_chunks=missing
                )
                raise IncompleteUploadError(session_id, missing, session.chunks_received)

            temp_path = self.recording_store.new_temp_path()
            try:
                with open(temp_path, "wb") as out:
                    for chunk_index in range(expected_chunk_count):
                        with open(self._chunk_path(session_id, chunk_index), "rb") as chunk:
                            shutil.copyfileobj(chunk, out)
                recording = self.recording_store.store_assembled(
                    temp_path, session.filename, owner_record_id
                )
            except OSError as e:
                self._remove_quietly(temp_path)
                raise StorageError(f"Failed to assemble upload {session_id}: {e}") from e
            except StorageError:
                self._remove_quietly(temp_path)
                raise

            shutil.rmtree(session_dir, ignore_errors=True)

        self._forget_lock(session_id)
        self.logger.info(
            "upload_session_finalized",
            session_id=session_id,
            recording_id=recording.id,
            chunk_count=expected_chunk_count,
            size_bytes=recording.size_bytes
        )
        return recording

    def cancel(self, session_id: str) -> None:
        """
        セッションを破棄

        チャンクが 0 個でも途中でも、無条件に一時ディレクトリを削除します。
        存在しないセッションに対しても成功します。
        """
        try:
            session_dir = self._session_dir(session_id)
        except SessionNotFoundError:
            return

        with self._lock_for(session_id):
            if os.path.exists(session_dir):
                shutil.rmtree(session_dir, ignore_errors=True)
        self._forget_lock(session_id)

        self.logger.info("upload_session_canceled", session_id=session_id)

    def purge_expired(self, max_age_seconds: int, now: Optional[datetime] = None) -> int:
        """
        放置されたセッションを削除

        Args:
            max_age_seconds: 作成からの最大保持秒数
            now: 現在時刻（テスト用）

        Returns:
            削除したセッション数
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=max_age_seconds)
        purged = 0

        for session_id in os.listdir(self.temp_dir):
            if not _SESSION_ID_PATTERN.match(session_id):
                continue
            try:
                session = self._read_metadata(session_id)
            except (SessionNotFoundError, StorageError):
                continue
            if session.created_at < cutoff:
                self.cancel(session_id)
                purged += 1

        if purged:
            self.logger.info("expired_upload_sessions_purged", count=purged)
        return purged

    def _remove_quietly(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            self.logger.warning("temp_file_cleanup_failed", path=path, exc_info=True)
