"""
ストレージモジュール (Storage Module)

確定済み録音のメタデータ永続化を抽象化するストレージレイヤーを提供します。
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Generator, List, Optional
import sqlite3

from .models import Recording


class StorageError(Exception):
    """
    ストレージエラー

    データベース操作・ファイル操作中に発生したエラーを表す例外クラスです。
    """
    pass


class Storage(ABC):
    """
    ストレージの抽象基底クラス

    確定済み録音のメタデータ永続化を担当する抽象インターフェースを定義します。
    具体的な実装（SQLite、PostgreSQL等）はこのクラスを継承して実装します。
    """

    @abstractmethod
    def save_recording(self, recording: Recording) -> None:
        """
        録音メタデータを保存

        Args:
            recording: 保存する録音データモデル

        Raises:
            StorageError: 保存に失敗した場合
        """
        pass

    @abstractmethod
    def get_recording(self, recording_id: str) -> Optional[Recording]:
        """
        録音 ID で録音を取得

        Args:
            recording_id: 録音 ID

        Returns:
            録音データモデル、見つからない場合はNone

        Raises:
            StorageError: 取得に失敗した場合
        """
        pass

    @abstractmethod
    def list_recordings(
        self,
        owner_record_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[Recording]:
        """
        録音一覧を取得

        Args:
            owner_record_id: 外部レコード ID で絞り込む（オプション）
            start_date: 開始日時（この日時以降の録音を取得）
            end_date: 終了日時（この日時以前の録音を取得）

        Returns:
            録音データモデルのリスト（新しい順）

        Raises:
            StorageError: 取得に失敗した場合
        """
        pass

    @abstractmethod
    def delete_recording(self, recording_id: str) -> bool:
        """
        録音メタデータを削除

        Args:
            recording_id: 録音 ID

        Returns:
            削除した場合はTrue、見つからない場合はFalse

        Raises:
            StorageError: 削除に失敗した場合
        """
        pass


class SQLiteStorage(Storage):
    """
    SQLite実装

    SQLiteデータベースを使用したストレージ実装です。
    開発環境やシンプルなデプロイメントに適しています。
    """

    def __init__(self, db_path: str = "call_recorder.db"):
        """
        SQLiteStorageを初期化

        Args:
            db_path: SQLiteデータベースファイルのパス
        """
        self.db_path = db_path
        self._create_tables()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        データベース接続のコンテキストマネージャー

        Yields:
            SQLite接続オブジェクト

        Raises:
            StorageError: 接続に失敗した場合
        """
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database connection error: {e}") from e
        finally:
            if conn:
                conn.close()

    def _create_tables(self) -> None:
        """
        recordings テーブルが存在しない場合に作成

        Raises:
            StorageError: テーブル作成に失敗した場合
        """
        create_recording_table = """
        CREATE TABLE IF NOT EXISTS recordings (
            id VARCHAR(64) PRIMARY KEY,
            path TEXT NOT NULL,
            owner_record_id VARCHAR(64) NOT NULL,
            size_bytes INTEGER NOT NULL,
            content_type VARCHAR(32) NOT NULL,
            created_at TIMESTAMP NOT NULL
        )
        """

        create_owner_index = """
        CREATE INDEX IF NOT EXISTS idx_recordings_owner ON recordings(owner_record_id)
        """

        create_created_at_index = """
        CREATE INDEX IF NOT EXISTS idx_recordings_created_at ON recordings(created_at)
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(create_recording_table)
                cursor.execute(create_owner_index)
                cursor.execute(create_created_at_index)
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create tables: {e}") from e

    def save_recording(self, recording: Recording) -> None:
        # 確定済み録音は不変のため INSERT のみ（同一 ID はエラー）
        sql = """
        INSERT INTO recordings (
            id, path, owner_record_id, size_bytes, content_type, created_at
        ) VALUES (?, ?, ?, ?, ?, ?)
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (
                    recording.id,
                    recording.path,
                    recording.owner_record_id,
                    recording.size_bytes,
                    recording.content_type,
                    recording.created_at.isoformat()
                ))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save recording: {e}") from e

    def get_recording(self, recording_id: str) -> Optional[Recording]:
        sql = """
        SELECT id, path, owner_record_id, size_bytes, content_type, created_at
        FROM recordings
        WHERE id = ?
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (recording_id,))
                row = cursor.fetchone()

                if row is None:
                    return None

                return self._row_to_recording(row)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to get recording: {e}") from e

    def list_recordings(
        self,
        owner_record_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[Recording]:
        sql = """
        SELECT id, path, owner_record_id, size_bytes, content_type, created_at
        FROM recordings
        """

        conditions = []
        params: List[str] = []

        if owner_record_id is not None:
            conditions.append("owner_record_id = ?")
            params.append(owner_record_id)

        if start_date is not None:
            conditions.append("created_at >= ?")
            params.append(start_date.isoformat())

        if end_date is not None:
            conditions.append("created_at <= ?")
            params.append(end_date.isoformat())

        if conditions:
            sql += " WHERE " + " AND ".join(conditions)

        sql += " ORDER BY created_at DESC"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                rows = cursor.fetchall()

                return [self._row_to_recording(row) for row in rows]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list recordings: {e}") from e

    def delete_recording(self, recording_id: str) -> bool:
        sql = "DELETE FROM recordings WHERE id = ?"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (recording_id,))
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete recording: {e}") from e

    def _row_to_recording(self, row: sqlite3.Row) -> Recording:
        """
        SQLite行をRecordingオブジェクトに変換

        Args:
            row: SQLite行オブジェクト

        Returns:
            Recording データモデル
        """
        return Recording(
            id=row["id"],
            path=row["path"],
            owner_record_id=row["owner_record_id"],
            size_bytes=row["size_bytes"],
            content_type=row["content_type"],
            created_at=datetime.fromisoformat(row["created_at"])
        )
