"""
録音ストアモジュール (Recording Store Module)

確定済み録音ファイルの保存先ディレクトリとメタデータを管理します。
録音 ID によるバイト範囲の読み出しと明示的な削除を提供します。
"""

import os
import re
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from .log import get_logger
from .models import Recording
from .storage import Storage, StorageError


class RecordingNotFoundError(Exception):
    """録音が存在しない（またはファイルが失われた）場合の例外"""

    def __init__(self, recording_id: str):
        super().__init__(f"Recording not found: {recording_id}")
        self.recording_id = recording_id


CONTENT_TYPES = {
    ".aac": "audio/aac",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
}

DEFAULT_CONTENT_TYPE = "audio/aac"

READ_BLOCK_SIZE = 64 * 1024

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def content_type_for(path: str) -> str:
    """拡張子から MIME タイプを決定"""
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


class RecordingStore:
    """
    確定済み録音を管理するクラス

    組み立て済みの一時ファイルを受け取り、衝突しないファイル名で
    録音ディレクトリに配置し、メタデータを Storage に登録します。

    Attributes:
        storage: メタデータの永続化に使用する Storage
        recordings_dir: 録音ファイル保存ディレクトリ
    """

    DEFAULT_RECORDINGS_DIR = "recordings"

    def __init__(self, storage: Storage, recordings_dir: Optional[str] = None):
        """
        RecordingStoreを初期化

        Args:
            storage: データ永続化に使用するStorageインスタンス
            recordings_dir: 録音ファイル保存ディレクトリ（オプション）
        """
        self.storage = storage
        self.recordings_dir = recordings_dir or self.DEFAULT_RECORDINGS_DIR
        self.logger = get_logger(__name__)
        self._naming_lock = threading.Lock()

        self._ensure_recordings_dir()

    def _ensure_recordings_dir(self) -> None:
        """録音ディレクトリが存在することを確認し、なければ作成"""
        Path(self.recordings_dir).mkdir(parents=True, exist_ok=True)

    def new_temp_path(self) -> str:
        """
        組み立て用の一時ファイルパスを返す

        最終ファイルと同じディレクトリに置くことで rename をアトミックにします。
        """
        return os.path.join(self.recordings_dir, f".assembling-{uuid.uuid4().hex}.part")

    def _final_path(self, owner_record_id: str, extension: str, timestamp: int) -> str:
        safe_owner = _UNSAFE_FILENAME_CHARS.sub("_", owner_record_id) or "recording"
        base = f"{safe_owner}_{timestamp}"
        candidate = os.path.join(self.recordings_dir, f"{base}{extension}")
        suffix = 1
        while os.path.exists(candidate):
            candidate = os.path.join(self.recordings_dir, f"{base}_{suffix}{extension}")
            suffix += 1
        return candidate

    def store_assembled(
        self,
        temp_path: str,
        original_filename: str,
        owner_record_id: str
    ) -> Recording:
        """
        組み立て済みファイルを録音として確定

        ファイル名は「外部レコード ID + UNIX 時刻 + 元の拡張子」です。
        メタデータの登録に失敗した場合はファイルを削除し、録音は作成されません。

        Args:
            temp_path: 組み立て済みの一時ファイル
            original_filename: アップロード時のファイル名（拡張子の取得に使用）
            owner_record_id: 外部レコード ID

        Returns:
            作成された Recording

        Raises:
            StorageError: ファイル移動またはメタデータ登録に失敗した場合
        """
        now = datetime.now(timezone.utc)
        extension = Path(original_filename).suffix.lower()

        with self._naming_lock:
            final_path = self._final_path(owner_record_id, extension, int(now.timestamp()))
            try:
                os.replace(temp_path, final_path)
            except OSError as e:
                raise StorageError(f"Failed to move assembled recording: {e}") from e

        recording = Recording(
            id=uuid.uuid4().hex,
            path=final_path,
            owner_record_id=owner_record_id,
            size_bytes=os.path.getsize(final_path),
            content_type=content_type_for(final_path),
            created_at=now,
        )

        try:
            self.storage.save_recording(recording)
        except StorageError:
            self.logger.error(
                "recording_registration_failed",
                recording_path=final_path,
                owner_record_id=owner_record_id,
                exc_info=True
            )
            os.remove(final_path)
            raise

        self.logger.info(
            "recording_stored",
            recording_id=recording.id,
            recording_path=final_path,
            owner_record_id=owner_record_id,
            size_bytes=recording.size_bytes
        )
        return recording

    def get(self, recording_id: str) -> Optional[Recording]:
        return self.storage.get_recording(recording_id)

    def require(self, recording_id: str) -> Recording:
        """
        録音を取得し、ファイルが存在することを確認

        Raises:
            RecordingNotFoundError: メタデータまたはファイルが存在しない場合
        """
        recording = self.storage.get_recording(recording_id)
        if recording is None or not os.path.isfile(recording.path):
            raise RecordingNotFoundError(recording_id)
        return recording

    def list_recordings(
        self,
        owner_record_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[Recording]:
        return self.storage.list_recordings(
            owner_record_id=owner_record_id,
            start_date=start_date,
            end_date=end_date
        )

    def open_range(
        self,
        recording: Recording,
        start: int,
        end: int,
        block_size: int = READ_BLOCK_SIZE
    ) -> Iterator[bytes]:
        """
        録音ファイルの [start, end] (両端を含む) を順に読み出す

        Args:
            recording: 対象の録音
            start: 開始バイト位置
            end: 終了バイト位置（含む）
            block_size: 一度に読み出すサイズ

        Yields:
            バイト列
        """
        remaining = end - start + 1
        with open(recording.path, "rb") as f:
            f.seek(start)
            while remaining > 0:
                data = f.read(min(block_size, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data

    def delete(self, recording_id: str) -> bool:
        """
        録音を削除（ファイルとメタデータ）

        セッションのキャンセルとは別の、明示的な操作です。

        Returns:
            削除した場合はTrue、見つからない場合はFalse
        """
        recording = self.storage.get_recording(recording_id)
        if recording is None:
            return False

        try:
            if os.path.exists(recording.path):
                os.remove(recording.path)
        except OSError as e:
            raise StorageError(f"Failed to delete recording file: {e}") from e

        deleted = self.storage.delete_recording(recording_id)
        self.logger.info(
            "recording_deleted",
            recording_id=recording_id,
            recording_path=recording.path
        )
        return deleted
