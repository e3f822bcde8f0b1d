"""
タスクストアモジュール (Task Store Module)

端末側のアップロードタスクと音声ソースの優先設定を SQLite に永続化します。
プロセスが終了しても、次回起動時に未完了のタスクから再開できます。
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Generator, Iterable, List, Optional
import sqlite3

from .models import AudioSourcePreference, CaptureSource, UploadStatus, UploadTask


class TaskStoreError(Exception):
    """
    タスクストアエラー

    タスクまたは優先設定の読み書きに失敗した場合に発生します。
    """
    pass


LAST_WORKING_SOURCE_KEY = "last_working_source"


class TaskStore:
    """
    SQLite によるタスクストア

    upload_tasks テーブルにタスクを 1 行ずつ、preferences テーブルに
    キー/値形式の設定を保存します。
    """

    def __init__(self, db_path: str = "call_recorder_client.db"):
        """
        TaskStoreを初期化

        Args:
            db_path: SQLiteデータベースファイルのパス
        """
        self.db_path = db_path
        self._create_tables()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            raise TaskStoreError(f"Database connection error: {e}") from e
        finally:
            if conn:
                conn.close()

    def _create_tables(self) -> None:
        create_task_table = """
        CREATE TABLE IF NOT EXISTS upload_tasks (
            id VARCHAR(64) PRIMARY KEY,
            file_path TEXT NOT NULL,
            owner_record_id VARCHAR(64) NOT NULL,
            total_bytes INTEGER NOT NULL,
            chunk_size INTEGER NOT NULL,
            status VARCHAR(16) NOT NULL,
            attempt INTEGER NOT NULL DEFAULT 0,
            session_id VARCHAR(64),
            chunks_acknowledged INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            next_attempt_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """

        create_status_index = """
        CREATE INDEX IF NOT EXISTS idx_upload_tasks_status ON upload_tasks(status)
        """

        create_preference_table = """
        CREATE TABLE IF NOT EXISTS preferences (
            key VARCHAR(64) PRIMARY KEY,
            value TEXT
        )
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(create_task_table)
                cursor.execute(create_status_index)
                cursor.execute(create_preference_table)
                conn.commit()
        except sqlite3.Error as e:
            raise TaskStoreError(f"Failed to create tables: {e}") from e

    def save_task(self, task: UploadTask) -> None:
        """
        タスクを保存（存在する場合は上書き）

        Args:
            task: 保存するタスク

        Raises:
            TaskStoreError: 保存に失敗した場合
        """
        sql = """
        INSERT OR REPLACE INTO upload_tasks (
            id, file_path, owner_record_id, total_bytes, chunk_size, status,
            attempt, session_id, chunks_acknowledged, last_error,
            next_attempt_at, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (
                    task.id,
                    task.file_path,
                    task.owner_record_id,
                    task.total_bytes,
                    task.chunk_size,
                    task.status.value,
                    task.attempt,
                    task.session_id,
                    task.chunks_acknowledged,
                    task.last_error,
                    task.next_attempt_at.isoformat() if task.next_attempt_at else None,
                    task.created_at.isoformat(),
                    task.updated_at.isoformat()
                ))
                conn.commit()
        except sqlite3.Error as e:
            raise TaskStoreError(f"Failed to save task: {e}") from e

    def update_task(self, task: UploadTask) -> bool:
        """
        既存のタスクを更新

        削除済みのタスクは再作成しません。

        Returns:
            更新した場合はTrue（タスクが存在しない場合はFalse）

        Raises:
            TaskStoreError: 更新に失敗した場合
        """
        sql = """
        UPDATE upload_tasks SET
            file_path = ?, owner_record_id = ?, total_bytes = ?, chunk_size = ?,
            status = ?, attempt = ?, session_id = ?, chunks_acknowledged = ?,
            last_error = ?, next_attempt_at = ?, updated_at = ?
        WHERE id = ?
        """

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (
                    task.file_path,
                    task.owner_record_id,
                    task.total_bytes,
                    task.chunk_size,
                    task.status.value,
                    task.attempt,
                    task.session_id,
                    task.chunks_acknowledged,
                    task.last_error,
                    task.next_attempt_at.isoformat() if task.next_attempt_at else None,
                    task.updated_at.isoformat(),
                    task.id
                ))
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise TaskStoreError(f"Failed to update task: {e}") from e

    def get_task(self, task_id: str) -> Optional[UploadTask]:
        sql = "SELECT * FROM upload_tasks WHERE id = ?"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (task_id,))
                row = cursor.fetchone()

                if row is None:
                    return None

                return self._row_to_task(row)
        except sqlite3.Error as e:
            raise TaskStoreError(f"Failed to get task: {e}") from e

    def list_tasks(self, statuses: Optional[Iterable[UploadStatus]] = None) -> List[UploadTask]:
        """
        タスク一覧を取得

        Args:
            statuses: 状態で絞り込む（None の場合はすべて）

        Returns:
            タスクのリスト（作成順）
        """
        sql = "SELECT * FROM upload_tasks"
        params: List[str] = []

        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            sql += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)

        sql += " ORDER BY created_at ASC"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                return [self._row_to_task(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise TaskStoreError(f"Failed to list tasks: {e}") from e

    def delete_task(self, task_id: str) -> bool:
        sql = "DELETE FROM upload_tasks WHERE id = ?"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (task_id,))
                conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise TaskStoreError(f"Failed to delete task: {e}") from e

    def get_preference(self) -> AudioSourcePreference:
        """
        音声ソースの優先設定を取得

        未保存、または不明な値の場合は空の設定を返します。
        """
        sql = "SELECT value FROM preferences WHERE key = ?"

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (LAST_WORKING_SOURCE_KEY,))
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise TaskStoreError(f"Failed to get preference: {e}") from e

        if row is None or row["value"] is None:
            return AudioSourcePreference()
        try:
            return AudioSourcePreference(last_working_source=CaptureSource(row["value"]))
        except ValueError:
            return AudioSourcePreference()

    def save_preference(self, preference: AudioSourcePreference) -> None:
        sql = "INSERT OR REPLACE INTO preferences (key, value) VALUES (?, ?)"
        source = preference.last_working_source

        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, (LAST_WORKING_SOURCE_KEY, source.value if source else None))
                conn.commit()
        except sqlite3.Error as e:
            raise TaskStoreError(f"Failed to save preference: {e}") from e

    def _row_to_task(self, row: sqlite3.Row) -> UploadTask:
        return UploadTask(
            id=row["id"],
            file_path=row["file_path"],
            owner_record_id=row["owner_record_id"],
            total_bytes=row["total_bytes"],
            chunk_size=row["chunk_size"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            status=UploadStatus(row["status"]),
            attempt=row["attempt"],
            session_id=row["session_id"],
            chunks_acknowledged=row["chunks_acknowledged"],
            last_error=row["last_error"],
            next_attempt_at=(
                datetime.fromisoformat(row["next_attempt_at"])
                if row["next_attempt_at"] else None
            )
        )
