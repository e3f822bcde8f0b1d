"""
アップロードクライアントモジュール (Upload Client Module)

サーバーのチャンクアップロード API (init / append / finalize / cancel) を
requests で呼び出し、HTTP の結果をアップロードキューが扱う例外に変換します。
"""

from typing import Any, Dict, List, Optional

import requests

from .log import get_logger


class UploadClientError(Exception):
    """アップロードクライアントエラーの基底クラス"""
    pass


class TransientUploadError(UploadClientError):
    """
    一時的な失敗

    接続エラー、タイムアウト、5xx、429 の場合に発生します。バックオフ後に再試行します。
    """
    pass


class SessionNotFoundError(UploadClientError):
    """サーバー側セッションが存在しない（init からやり直す）"""

    def __init__(self, session_id: str):
        super().__init__(f"Upload session not found on server: {session_id}")
        self.session_id = session_id


class IncompleteUploadError(UploadClientError):
    """
    finalize 時にチャンクが揃っていない

    Attributes:
        missing_chunks: サーバーが受信していないチャンクインデックス
        chunks_received: サーバーが受信済みのチャンク数
    """

    def __init__(self, session_id: str, missing_chunks: List[int], chunks_received: int):
        super().__init__(f"Incomplete upload {session_id}: missing {missing_chunks}")
        self.session_id = session_id
        self.missing_chunks = missing_chunks
        self.chunks_received = chunks_received


class RemoteStorageError(UploadClientError):
    """サーバー側のストレージ障害（タスクにとって致命的）"""
    pass


class UploadRejectedError(UploadClientError):
    """
    サーバーがリクエストを拒否した（再試行しても成功しない）

    Attributes:
        status_code: HTTP ステータスコード
        error_type: エラーレスポンスの error フィールド
    """

    def __init__(self, status_code: int, error_type: Optional[str], message: str):
        super().__init__(f"Upload rejected ({status_code} {error_type}): {message}")
        self.status_code = status_code
        self.error_type = error_type


CALLER_ID_HEADER = "X-Caller-Id"


class UploadClient:
    """
    チャンクアップロード API のクライアント

    Attributes:
        base_url: サーバーのベース URL
        caller_id: 認証済みの発信者 ID
        timeout: リクエストのタイムアウト秒
        session: requests.Session
    """

    def __init__(
        self,
        base_url: str,
        caller_id: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.caller_id = caller_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers[CALLER_ID_HEADER] = caller_id
        self.logger = get_logger(__name__)

    def init(self, filename: str, owner_record_id: str) -> str:
        """
        アップロードセッションを作成

        Returns:
            セッション ID
        """
        data = self._request(
            "POST",
            "/api/uploads",
            json={"filename": filename, "ownerRecordId": owner_record_id}
        )
        session_id = data.get("sessionId")
        if not session_id:
            raise UploadRejectedError(200, None, "sessionId missing from init response")
        return session_id

    def append(self, session_id: str, chunk_index: int, data: bytes) -> Dict[str, Any]:
        """
        チャンクを送信

        Returns:
            {"chunksReceived": int, "totalBytesSoFar": int}
        """
        return self._request(
            "PUT",
            f"/api/uploads/{session_id}/chunks/{chunk_index}",
            data=data,
            headers={"Content-Type": "application/octet-stream"},
            session_id=session_id
        )

    def finalize(self, session_id: str, expected_chunk_count: int, owner_record_id: str) -> Dict[str, Any]:
        """
        セッションを確定

        Returns:
            {"recordingId": str, "recordingPath": str, "sizeBytes": int}

        Raises:
            IncompleteUploadError: サーバーが一部のチャンクを受信していない場合
        """
        return self._request(
            "POST",
            f"/api/uploads/{session_id}/finalize",
            json={"expectedChunkCount": expected_chunk_count, "ownerRecordId": owner_record_id},
            session_id=session_id
        )

    def cancel(self, session_id: str) -> None:
        self._request("DELETE", f"/api/uploads/{session_id}", session_id=session_id)

    def close(self) -> None:
        self.session.close()

    def _request(
        self,
        method: str,
        path: str,
        session_id: Optional[str] = None,
        **kwargs
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientUploadError(f"{method} {path} failed: {e}") from e
        except requests.RequestException as e:
            raise UploadClientError(f"{method} {path} failed: {e}") from e

        self.logger.debug(
            "upload_request_completed",
            method=method,
            path=path,
            status_code=response.status_code
        )
        return self._handle_response(response, session_id)

    def _handle_response(self, response: requests.Response, session_id: Optional[str]) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        status_code = response.status_code
        if status_code < 400:
            return body

        error_type = body.get("error")
        message = body.get("message") or response.reason or ""
        details = body.get("details") or {}

        if status_code == 507 or error_type == "storage_error":
            raise RemoteStorageError(message)
        if status_code == 429 or status_code >= 500:
            raise TransientUploadError(f"Server error {status_code}: {message}")
        if status_code == 404 and error_type == "session_not_found":
            raise SessionNotFoundError(session_id or "")
        if status_code == 409 and error_type == "incomplete_upload":
            raise IncompleteUploadError(
                session_id or "",
                list(details.get("missing_chunks", [])),
                int(details.get("chunks_received", 0))
            )
        raise UploadRejectedError(status_code, error_type, message)
