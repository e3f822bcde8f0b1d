"""
Flask アプリケーションモジュール (Flask Application Module)

チャンクアップロード (init / append / finalize / cancel) と
録音のレンジ配信エンドポイントを提供します。

呼び出し元の認証は外部で解決済みであり、X-Caller-Id ヘッダーで渡されます。
外部レコードの所有確認は create_app に渡される owner_check に委譲します。
"""

import traceback
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Flask, Response, jsonify, request

from .config import ServerConfig
from .log import configure_structlog, get_logger
from .models import Recording
from .recording_store import RecordingNotFoundError, RecordingStore
from .session_store import (
    ChunkTooLargeError,
    IncompleteUploadError,
    OwnerMismatchError,
    SessionNotFoundError,
    UploadSessionStore,
)
from .storage import SQLiteStorage, StorageError
from .streaming import InvalidRangeError, stream_recording


CALLER_ID_HEADER = "X-Caller-Id"

OwnerCheck = Callable[[str, str], bool]
AttachHook = Callable[[Recording], None]


class UploadValidationError(Exception):
    """
    リクエスト検証エラー

    必須フィールドの欠落や型の不一致を検出した場合に発生します。

    Attributes:
        message: エラーメッセージ
        error_type: エラーの種類
    """

    def __init__(self, message: str, error_type: str = "bad_request"):
        super().__init__(message)
        self.message = message
        self.error_type = error_type


class CallerIdentityError(Exception):
    """X-Caller-Id ヘッダーがない"""
    pass


class OwnershipError(Exception):
    """呼び出し元が外部レコードを所有していない"""

    def __init__(self, caller_id: str, owner_record_id: str):
        super().__init__(f"Caller {caller_id} may not access record {owner_record_id}")
        self.caller_id = caller_id
        self.owner_record_id = owner_record_id


def allow_all_owners(caller_id: str, owner_record_id: str) -> bool:
    """所有確認を行わない既定の owner_check"""
    return True


def validate_json_request(data: Any, required_fields: Optional[list] = None) -> Tuple[bool, Optional[str]]:
    """
    JSON リクエストを検証

    Args:
        data: 検証するデータ
        required_fields: 必須フィールドのリスト（オプション）

    Returns:
        (検証結果, エラーメッセージ) のタプル
    """
    if data is None:
        return False, "Invalid JSON: request body is empty or malformed"

    if not isinstance(data, dict):
        return False, "Invalid JSON: request body must be a JSON object"

    if required_fields:
        missing_fields = [field for field in required_fields if field not in data or data[field] in (None, "")]
        if missing_fields:
            return False, f"Missing required fields: {', '.join(missing_fields)}"

    return True, None


def create_error_response(
    error_type: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None
) -> Tuple[Response, int]:
    """
    エラーレスポンスを作成

    Args:
        error_type: エラーの種類
        message: エラーメッセージ
        status_code: HTTP ステータスコード
        details: 追加の詳細情報（オプション）

    Returns:
        (JSON レスポンス, ステータスコード) のタプル
    """
    response_body = {
        "error": error_type,
        "message": message,
        "status_code": status_code
    }
    if details:
        response_body["details"] = details

    return jsonify(response_body), status_code


class UploadHandler:
    """
    アップロードと配信のリクエストを処理するハンドラー

    所有確認と、確定した録音を外部レコードへ紐付けるフックの呼び出しを担当します。

    Attributes:
        session_store: アップロードセッションストア
        recording_store: 録音ストア
        owner_check: (caller_id, owner_record_id) -> bool
        on_recording_finalized: 録音確定時に呼ばれるフック（オプション）
        logger: 構造化ロガー
    """

    def __init__(
        self,
        session_store: UploadSessionStore,
        recording_store: RecordingStore,
        owner_check: OwnerCheck = allow_all_owners,
        on_recording_finalized: Optional[AttachHook] = None
    ):
        self.session_store = session_store
        self.recording_store = recording_store
        self.owner_check = owner_check
        self.on_recording_finalized = on_recording_finalized
        self.logger = get_logger(__name__)

    def _ensure_owner(self, caller_id: str, owner_record_id: str) -> None:
        if not self.owner_check(caller_id, owner_record_id):
            raise OwnershipError(caller_id, owner_record_id)

    def handle_init(self, caller_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        セッション作成

        Args:
            caller_id: 呼び出し元 ID
            data: {"filename": str, "ownerRecordId": str}

        Returns:
            {"sessionId": str}
        """
        filename = str(data["filename"])
        owner_record_id = str(data["ownerRecordId"])
        self._ensure_owner(caller_id, owner_record_id)

        session_id = self.session_store.init(filename, owner_record_id)
        return {"sessionId": session_id}

    def handle_append(self, caller_id: str, session_id: str, chunk_index: int, body: bytes) -> Dict[str, Any]:
        session = self.session_store.get(session_id)
        self._ensure_owner(caller_id, session.owner_record_id)

        result = self.session_store.append(session_id, chunk_index, body)
        return {
            "chunksReceived": result["chunks_received"],
            "totalBytesSoFar": result["total_bytes_so_far"],
        }

    def handle_finalize(self, caller_id: str, session_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        セッション確定

        確定後に on_recording_finalized を呼び出し、外部レコードへの紐付けを依頼します。
        フックの失敗は記録のみ行い、確定済みの録音には影響しません。
        """
        owner_record_id = str(data["ownerRecordId"])
        try:
            expected_chunk_count = int(data["expectedChunkCount"])
        except (TypeError, ValueError):
            raise UploadValidationError("expectedChunkCount must be an integer")
        if expected_chunk_count < 0:
            raise UploadValidationError("expectedChunkCount must be non-negative")

        self._ensure_owner(caller_id, owner_record_id)
        recording = self.session_store.finalize(session_id, expected_chunk_count, owner_record_id)

        if self.on_recording_finalized is not None:
            try:
                self.on_recording_finalized(recording)
            except Exception as e:
                self.logger.error(
                    "recording_attachment_failed",
                    recording_id=recording.id,
                    owner_record_id=owner_record_id,
                    error=str(e),
                    exc_info=True
                )

        return {
            "recordingId": recording.id,
            "recordingPath": recording.path,
            "sizeBytes": recording.size_bytes,
        }

    def handle_cancel(self, caller_id: str, session_id: str) -> None:
        try:
            session = self.session_store.get(session_id)
        except SessionNotFoundError:
            # 存在しないセッションのキャンセルは成功扱い
            return
        self._ensure_owner(caller_id, session.owner_record_id)
        self.session_store.cancel(session_id)

    def handle_stream(self, caller_id: str, recording_id: str, range_header: Optional[str]) -> Response:
        recording = self.recording_store.require(recording_id)
        self._ensure_owner(caller_id, recording.owner_record_id)
        return stream_recording(self.recording_store, recording, range_header)

    def handle_delete_recording(self, caller_id: str, recording_id: str) -> None:
        recording = self.recording_store.get(recording_id)
        if recording is None:
            raise RecordingNotFoundError(recording_id)
        self._ensure_owner(caller_id, recording.owner_record_id)
        self.recording_store.delete(recording_id)


def _require_caller_id() -> str:
    caller_id = request.headers.get(CALLER_ID_HEADER, "").strip()
    if not caller_id:
        raise CallerIdentityError(f"{CALLER_ID_HEADER} header is required")
    return caller_id


def _require_json(required_fields: list) -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True)
    is_valid, error_message = validate_json_request(data, required_fields)
    if not is_valid:
        raise UploadValidationError(error_message, error_type="bad_request")
    return data


def create_app(
    config: Optional[ServerConfig] = None,
    owner_check: OwnerCheck = allow_all_owners,
    on_recording_finalized: Optional[AttachHook] = None
) -> Flask:
    """
    Flask アプリケーションを作成

    Args:
        config: サーバー設定（None の場合は環境変数から読み込み）
        owner_check: 所有確認関数 (caller_id, owner_record_id) -> bool
        on_recording_finalized: 録音確定時に外部レコードへ紐付けるフック

    Returns:
        設定済みの Flask アプリケーション
    """
    app = Flask(__name__)

    # 設定を読み込み（テスト時は外部から注入可能）
    if config is None:
        config = ServerConfig.from_env()

    app.config["CALL_RECORDER_CONFIG"] = config
    app.config["MAX_CONTENT_LENGTH"] = config.max_chunk_bytes

    configure_structlog(config.log_level)

    logger = get_logger(__name__)
    logger.info(
        "application_initialized",
        log_level=config.log_level,
        recordings_dir=config.recordings_dir,
        upload_temp_dir=config.upload_temp_dir
    )

    storage = SQLiteStorage(config.database_path)
    app.config["STORAGE"] = storage

    recording_store = RecordingStore(storage, recordings_dir=config.recordings_dir)
    app.config["RECORDING_STORE"] = recording_store

    session_store = UploadSessionStore(
        temp_dir=config.upload_temp_dir,
        recording_store=recording_store,
        max_chunk_bytes=config.max_chunk_bytes
    )
    app.config["SESSION_STORE"] = session_store

    # 起動時に放置セッションを掃除
    session_store.purge_expired(config.session_ttl_seconds)

    upload_handler = UploadHandler(
        session_store=session_store,
        recording_store=recording_store,
        owner_check=owner_check,
        on_recording_finalized=on_recording_finalized
    )
    app.config["UPLOAD_HANDLER"] = upload_handler

    # ==========================================================================
    # エラーハンドラー (Error Handlers)
    # ==========================================================================

    @app.errorhandler(400)
    def handle_bad_request(error):
        logger.error(
            "bad_request_error",
            error_type="bad_request",
            error_message=str(error),
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type="bad_request",
            message=str(error.description) if hasattr(error, 'description') else "Bad Request",
            status_code=400
        )

    @app.errorhandler(404)
    def handle_not_found(error):
        logger.warning("not_found_error", path=request.path, method=request.method)
        return create_error_response(
            error_type="not_found",
            message="Not Found",
            status_code=404
        )

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        logger.warning(
            "method_not_allowed_error",
            error_type="method_not_allowed",
            error_message=str(error),
            path=request.path,
            method=request.method
        )
        return create_error_response(
            error_type="method_not_allowed",
            message=str(error.description) if hasattr(error, 'description') else "Method Not Allowed",
            status_code=405
        )

    @app.errorhandler(413)
    def handle_payload_too_large(error):
        logger.warning(
            "payload_too_large_error",
            path=request.path,
            content_length=request.content_length,
            limit=config.max_chunk_bytes
        )
        return create_error_response(
            error_type="payload_too_large",
            message=f"Chunk exceeds {config.max_chunk_bytes} bytes",
            status_code=413
        )

    @app.errorhandler(ChunkTooLargeError)
    def handle_chunk_too_large(error):
        return handle_payload_too_large(error)

    @app.errorhandler(UploadValidationError)
    def handle_upload_validation_error(error):
        logger.error(
            "upload_validation_error",
            error_type=error.error_type,
            error_message=error.message,
            path=request.path,
            method=request.method,
            content_type=request.content_type
        )
        return create_error_response(
            error_type=error.error_type,
            message=error.message,
            status_code=400
        )

    @app.errorhandler(OwnerMismatchError)
    def handle_owner_mismatch(error):
        logger.warning("owner_mismatch_error", error_message=str(error), path=request.path)
        return create_error_response(
            error_type="bad_request",
            message=str(error),
            status_code=400
        )

    @app.errorhandler(CallerIdentityError)
    def handle_unauthorized(error):
        logger.warning("unauthorized_error", path=request.path, method=request.method)
        return create_error_response(
            error_type="unauthorized",
            message=str(error),
            status_code=401
        )

    @app.errorhandler(OwnershipError)
    def handle_forbidden(error):
        logger.warning(
            "forbidden_error",
            caller_id=error.caller_id,
            owner_record_id=error.owner_record_id,
            path=request.path
        )
        return create_error_response(
            error_type="forbidden",
            message="Not authorized for this record",
            status_code=403
        )

    @app.errorhandler(SessionNotFoundError)
    def handle_session_not_found(error):
        logger.warning("session_not_found", session_id=error.session_id, path=request.path)
        return create_error_response(
            error_type="session_not_found",
            message="Upload session not found",
            status_code=404
        )

    @app.errorhandler(RecordingNotFoundError)
    def handle_recording_not_found(error):
        logger.warning("recording_not_found", recording_id=error.recording_id, path=request.path)
        return create_error_response(
            error_type="recording_not_found",
            message="Recording not found",
            status_code=404
        )

    @app.errorhandler(IncompleteUploadError)
    def handle_incomplete_upload(error):
        return create_error_response(
            error_type="incomplete_upload",
            message="Incomplete upload - not all chunks received",
            status_code=409,
            details={
                "missing_chunks": error.missing_chunks,
                "chunks_received": error.chunks_received,
            }
        )

    @app.errorhandler(InvalidRangeError)
    def handle_invalid_range(error):
        logger.info(
            "invalid_range_request",
            range_header=error.range_header,
            size=error.size,
            path=request.path
        )
        response, status_code = create_error_response(
            error_type="invalid_range",
            message="Invalid range request",
            status_code=416
        )
        response.headers["Content-Range"] = f"bytes */{error.size}"
        return response, status_code

    @app.errorhandler(StorageError)
    def handle_storage_error(error):
        logger.error(
            "storage_error",
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="storage_error",
            message="Storage failure",
            status_code=507
        )

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.error(
            "internal_server_error",
            error_type="internal_error",
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="internal_error",
            message="Internal Server Error",
            status_code=500
        )

    @app.errorhandler(Exception)
    def handle_generic_exception(error):
        logger.error(
            "unhandled_exception",
            error_type=type(error).__name__,
            error_message=str(error),
            path=request.path,
            method=request.method,
            stack_trace=traceback.format_exc(),
            exc_info=True
        )
        return create_error_response(
            error_type="internal_error",
            message="An unexpected error occurred",
            status_code=500
        )

    # ==========================================================================
    # エンドポイント (Endpoints)
    # ==========================================================================

    @app.route("/health", methods=["GET"])
    def health_check():
        logger.debug("health_check_requested")
        return jsonify({"status": "healthy"}), 200

    @app.route("/api/uploads", methods=["POST"])
    def init_upload():
        """
        アップロードセッション作成

        Request Body (JSON):
            - filename: 元のファイル名
            - ownerRecordId: 外部レコード ID

        Returns:
            201 {"sessionId": str}
        """
        caller_id = _require_caller_id()
        data = _require_json(["filename", "ownerRecordId"])

        result = upload_handler.handle_init(caller_id, data)
        logger.info(
            "upload_init_processed",
            session_id=result["sessionId"],
            owner_record_id=data["ownerRecordId"]
        )
        return jsonify(result), 201

    @app.route("/api/uploads/<session_id>/chunks/<int:chunk_index>", methods=["PUT"])
    def append_chunk(session_id: str, chunk_index: int):
        """
        チャンク追加

        Request Body: チャンクの生バイト列

        Returns:
            200 {"chunksReceived": int, "totalBytesSoFar": int}
        """
        caller_id = _require_caller_id()
        body = request.get_data(cache=False)

        result = upload_handler.handle_append(caller_id, session_id, chunk_index, body)
        return jsonify(result), 200

    @app.route("/api/uploads/<session_id>/finalize", methods=["POST"])
    def finalize_upload(session_id: str):
        """
        セッション確定

        Request Body (JSON):
            - expectedChunkCount: チャンク総数
            - ownerRecordId: 外部レコード ID

        Returns:
            201 {"recordingId": str, "recordingPath": str, "sizeBytes": int}
        """
        caller_id = _require_caller_id()
        data = _require_json(["expectedChunkCount", "ownerRecordId"])

        result = upload_handler.handle_finalize(caller_id, session_id, data)
        logger.info(
            "upload_finalize_processed",
            session_id=session_id,
            recording_id=result["recordingId"]
        )
        return jsonify(result), 201

    @app.route("/api/uploads/<session_id>", methods=["DELETE"])
    def cancel_upload(session_id: str):
        caller_id = _require_caller_id()
        upload_handler.handle_cancel(caller_id, session_id)
        return jsonify({"status": "canceled"}), 200

    @app.route("/api/recordings/<recording_id>", methods=["GET"])
    def get_recording(recording_id: str):
        """
        録音配信

        Range ヘッダーに対応し、200 (全体) / 206 (部分) / 416 (範囲不正) を返します。
        """
        caller_id = _require_caller_id()
        range_header = request.headers.get("Range")
        logger.debug(
            "recording_stream_requested",
            recording_id=recording_id,
            range_header=range_header
        )
        return upload_handler.handle_stream(caller_id, recording_id, range_header)

    @app.route("/api/recordings/<recording_id>", methods=["DELETE"])
    def delete_recording(recording_id: str):
        caller_id = _require_caller_id()
        upload_handler.handle_delete_recording(caller_id, recording_id)
        return jsonify({"status": "deleted"}), 200

    logger.info(
        "application_ready",
        endpoints=["/health", "/api/uploads", "/api/recordings"]
    )

    return app
