"""
データモデルモジュール (Data Models Module)

録音セッション、アップロードタスク、アップロードセッション、
確定済み録音のデータモデルを定義します。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import os


class CallState(str, Enum):
    """端末から通知される通話状態"""
    IDLE = "idle"
    RINGING = "ringing"
    OFFHOOK = "offhook"


class CaptureState(str, Enum):
    """録音セッションの状態"""
    IDLE = "idle"
    CAPTURING = "capturing"
    STOPPED = "stopped"
    FAILED = "failed"


class CaptureSource(str, Enum):
    """
    音声取得ソースの種類

    通話の両者を取得できるもの（高品質）から、
    端末のマイクのみ（どの端末でも動作）まで。
    """
    VOICE_CALL = "voice_call"
    VOICE_COMMUNICATION = "voice_communication"
    VOICE_RECOGNITION = "voice_recognition"
    MIC = "mic"


class UploadStatus(str, Enum):
    """アップロードタスクの状態"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CaptureParameters:
    """
    録音パラメータ

    すべてのソース候補に対して同じ値で録音を試みます。

    Attributes:
        sample_rate: サンプリングレート (Hz)
        bit_rate: ビットレート (bps)
        channels: チャンネル数（モノラル固定）
        container: 出力コンテナ (ogg = Ogg Vorbis)
    """
    sample_rate: int = 44100
    bit_rate: int = 128000
    channels: int = 1
    container: str = "ogg"


@dataclass(frozen=True)
class AudioSourcePreference:
    """
    最後に成功した音声ソース

    ソース選択の入力として渡され、選択結果として新しい値が返されます。
    永続化は呼び出し側が行います。
    """
    last_working_source: Optional[CaptureSource] = None

    def with_source(self, source: CaptureSource) -> 'AudioSourcePreference':
        return AudioSourcePreference(last_working_source=source)


@dataclass
class CaptureSession:
    """
    録音セッション（1 通話につき 1 つ）

    Attributes:
        id: セッション ID（通話開始時に生成）
        state: 状態
        owner_record_id: 録音を紐付ける外部レコード ID（通話ログ等）
        phone_number: 通話相手の電話番号（ファイル名にのみ使用）
        audio_source: 使用中のソース（成功するまで None）
        local_file_path: 録音ファイルのパス
        started_at: 開始日時
        stopped_at: 終了日時（録音中は None）
    """
    id: str
    state: CaptureState = CaptureState.IDLE
    owner_record_id: Optional[str] = None
    phone_number: Optional[str] = None
    audio_source: Optional[CaptureSource] = None
    local_file_path: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None


@dataclass
class UploadTask:
    """
    アップロードタスク（ローカルファイル 1 つにつき 1 つ）

    Attributes:
        id: タスク ID
        file_path: ローカルファイルのパス
        owner_record_id: 外部レコード ID
        total_bytes: ファイルサイズ
        chunk_size: チャンクサイズ（タスクの存続期間中は固定）
        status: 状態
        attempt: リトライ回数（バックオフの計算に使用）
        session_id: サーバー側アップロードセッション ID（init 後に設定）
        chunks_acknowledged: サーバーが受領済みの連続チャンク数（次に送るインデックス）
        last_error: 最後のエラーメッセージ
        next_attempt_at: 次回実行予定日時
        created_at: 作成日時
        updated_at: 更新日時
    """
    id: str
    file_path: str
    owner_record_id: str
    total_bytes: int
    chunk_size: int
    created_at: datetime
    updated_at: datetime
    status: UploadStatus = UploadStatus.PENDING
    attempt: int = 0
    session_id: Optional[str] = None
    chunks_acknowledged: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    @property
    def filename(self) -> str:
        return os.path.basename(self.file_path)

    @property
    def total_chunks(self) -> int:
        return -(-self.total_bytes // self.chunk_size)

    @property
    def bytes_acknowledged(self) -> int:
        return min(self.chunks_acknowledged * self.chunk_size, self.total_bytes)


@dataclass
class UploadSession:
    """
    サーバー側アップロードセッション

    セッションディレクトリの metadata.json と相互変換されます。
    chunks_received は受信済みの「異なる」チャンクインデックスの数です。
    """
    id: str
    filename: str
    owner_record_id: str
    created_at: datetime
    received_indices: List[int] = field(default_factory=list)
    total_bytes: int = 0

    @property
    def chunks_received(self) -> int:
        return len(self.received_indices)

    def missing_indices(self, expected_chunk_count: int) -> List[int]:
        received = set(self.received_indices)
        return [i for i in range(expected_chunk_count) if i not in received]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upload_id": self.id,
            "filename": self.filename,
            "owner_record_id": self.owner_record_id,
            "chunks_received": self.chunks_received,
            "received_indices": sorted(self.received_indices),
            "total_bytes": self.total_bytes,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UploadSession':
        return cls(
            id=data["upload_id"],
            filename=data["filename"],
            owner_record_id=data["owner_record_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            received_indices=list(data.get("received_indices", [])),
            total_bytes=data.get("total_bytes", 0),
        )


@dataclass
class Recording:
    """
    確定済み録音

    finalize によってのみ作成され、作成後は変更されません。

    Attributes:
        id: 録音 ID（不透明な識別子）
        path: 録音ファイルのパス
        owner_record_id: 外部レコード ID
        size_bytes: ファイルサイズ
        content_type: MIME タイプ
        created_at: 作成日時
    """
    id: str
    path: str
    owner_record_id: str
    size_bytes: int
    content_type: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordingId": self.id,
            "recordingPath": self.path,
            "ownerRecordId": self.owner_record_id,
            "sizeBytes": self.size_bytes,
            "contentType": self.content_type,
            "createdAt": self.created_at.isoformat(),
        }
