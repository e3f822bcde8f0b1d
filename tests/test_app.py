"""
Flask アプリケーションのテスト (Flask Application Tests)

アップロード API、録音配信 API、エラーレスポンス、構造化ロギングをテストします。
"""

import json
import os
from unittest.mock import MagicMock

import pytest

from call_recorder.app import (
    CALLER_ID_HEADER,
    UploadHandler,
    create_app,
    create_error_response,
    validate_json_request,
)
from call_recorder.config import ServerConfig
from call_recorder.log import configure_structlog, get_logger
from call_recorder.recording_store import RecordingStore
from call_recorder.session_store import UploadSessionStore
from call_recorder.storage import SQLiteStorage, StorageError


MIB = 1024 * 1024
HEADERS = {CALLER_ID_HEADER: "telecaller-7"}


@pytest.fixture
def test_config(tmp_path):
    """テスト用の設定を作成"""
    return ServerConfig(
        recordings_dir=str(tmp_path / "recordings"),
        upload_temp_dir=str(tmp_path / "uploads"),
        database_path=str(tmp_path / "meta.db"),
        max_chunk_bytes=2 * MIB,
        session_ttl_seconds=3600,
        log_level="DEBUG"
    )


@pytest.fixture
def app(test_config):
    """テスト用の Flask アプリケーションを作成"""
    app = create_app(test_config)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """テスト用のクライアントを作成"""
    return app.test_client()


def init_session(client, filename="call_1700000000.m4a", owner="lead-42"):
    response = client.post(
        "/api/uploads",
        json={"filename": filename, "ownerRecordId": owner},
        headers=HEADERS
    )
    assert response.status_code == 201
    return response.get_json()["sessionId"]


def put_chunk(client, session_id, index, data):
    return client.put(
        f"/api/uploads/{session_id}/chunks/{index}",
        data=data,
        headers={**HEADERS, "Content-Type": "application/octet-stream"}
    )


def finalize(client, session_id, count, owner="lead-42"):
    return client.post(
        f"/api/uploads/{session_id}/finalize",
        json={"expectedChunkCount": count, "ownerRecordId": owner},
        headers=HEADERS
    )


def upload(client, data, filename="call.m4a", owner="lead-42", chunk_size=MIB):
    session_id = init_session(client, filename, owner)
    chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]
    for index, chunk in enumerate(chunks):
        assert put_chunk(client, session_id, index, chunk).status_code == 200
    response = finalize(client, session_id, len(chunks), owner)
    assert response.status_code == 201
    return response.get_json()


class TestFlaskAppCreation:
    """Flask アプリケーション作成のテスト"""

    def test_create_app_stores_components(self, app, test_config):
        assert app.config["CALL_RECORDER_CONFIG"] == test_config
        assert isinstance(app.config["STORAGE"], SQLiteStorage)
        assert isinstance(app.config["RECORDING_STORE"], RecordingStore)
        assert isinstance(app.config["SESSION_STORE"], UploadSessionStore)
        assert isinstance(app.config["UPLOAD_HANDLER"], UploadHandler)

    def test_create_app_creates_directories(self, app, test_config):
        assert os.path.isdir(test_config.recordings_dir)
        assert os.path.isdir(test_config.upload_temp_dir)

    def test_create_app_purges_expired_sessions(self, test_config):
        first = create_app(test_config)
        session_store = first.config["SESSION_STORE"]
        session_id = session_store.init("a.m4a", "lead-42")

        metadata_path = os.path.join(test_config.upload_temp_dir, session_id, "metadata.json")
        with open(metadata_path, encoding="utf-8") as f:
            metadata = json.load(f)
        metadata["created_at"] = "2000-01-01T00:00:00+00:00"
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f)

        create_app(test_config)

        assert not os.path.exists(os.path.join(test_config.upload_temp_dir, session_id))


class TestHealthCheckEndpoint:
    """ヘルスチェックエンドポイントのテスト"""

    def test_health_check_returns_healthy_status(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json() == {"status": "healthy"}


class TestCallerIdentity:
    """X-Caller-Id ヘッダーの検証"""

    @pytest.mark.parametrize("method,path", [
        ("post", "/api/uploads"),
        ("put", "/api/uploads/AAAAAAAAAAAAAAAAAAAAAA/chunks/0"),
        ("post", "/api/uploads/AAAAAAAAAAAAAAAAAAAAAA/finalize"),
        ("delete", "/api/uploads/AAAAAAAAAAAAAAAAAAAAAA"),
        ("get", "/api/recordings/abc"),
        ("delete", "/api/recordings/abc"),
    ])
    def test_missing_caller_returns_401(self, client, method, path):
        response = getattr(client, method)(path)

        assert response.status_code == 401
        assert response.get_json()["error"] == "unauthorized"


class TestInitEndpoint:
    """POST /api/uploads のテスト"""

    def test_init_returns_session_id(self, client):
        response = client.post(
            "/api/uploads",
            json={"filename": "call.m4a", "ownerRecordId": "lead-42"},
            headers=HEADERS
        )

        assert response.status_code == 201
        assert response.get_json()["sessionId"]

    def test_init_missing_fields_returns_400(self, client):
        response = client.post("/api/uploads", json={"filename": "call.m4a"}, headers=HEADERS)

        data = response.get_json()
        assert response.status_code == 400
        assert data["error"] == "bad_request"
        assert "ownerRecordId" in data["message"]

    def test_init_invalid_json_returns_400(self, client):
        response = client.post(
            "/api/uploads",
            data="not json",
            content_type="application/json",
            headers=HEADERS
        )

        assert response.status_code == 400


class TestAppendEndpoint:
    """PUT /api/uploads/<id>/chunks/<index> のテスト"""

    def test_append_returns_progress(self, client):
        session_id = init_session(client)

        response = put_chunk(client, session_id, 0, b"x" * 100)

        assert response.status_code == 200
        assert response.get_json() == {"chunksReceived": 1, "totalBytesSoFar": 100}

    def test_repeated_append_is_idempotent(self, client):
        session_id = init_session(client)

        put_chunk(client, session_id, 0, b"x" * 100)
        response = put_chunk(client, session_id, 0, b"x" * 100)

        assert response.get_json() == {"chunksReceived": 1, "totalBytesSoFar": 100}

    def test_append_unknown_session_returns_404(self, client):
        response = put_chunk(client, "AAAAAAAAAAAAAAAAAAAAAA", 0, b"x")

        assert response.status_code == 404
        assert response.get_json()["error"] == "session_not_found"

    def test_append_oversized_chunk_returns_413(self, client):
        session_id = init_session(client)

        response = put_chunk(client, session_id, 0, b"x" * (2 * MIB + 1))

        assert response.status_code == 413
        assert response.get_json()["error"] == "payload_too_large"


class TestFinalizeEndpoint:
    """POST /api/uploads/<id>/finalize のテスト"""

    def test_scenario_lead_42(self, client, app):
        """
        正常系: 3 チャンク (1MiB, 1MiB, 351424) が lead-42 の 2,448,576 バイトの録音になる
        """
        session_id = init_session(client, "call_1700000000.m4a", "lead-42")
        put_chunk(client, session_id, 0, b"a" * MIB)
        put_chunk(client, session_id, 1, b"b" * MIB)
        put_chunk(client, session_id, 2, b"c" * 351424)

        response = finalize(client, session_id, 3)

        data = response.get_json()
        assert response.status_code == 201
        assert data["sizeBytes"] == 2448576
        assert data["recordingPath"].endswith(".m4a")
        recording = app.config["RECORDING_STORE"].get(data["recordingId"])
        assert recording.owner_record_id == "lead-42"
        assert recording.size_bytes == 2448576

    def test_finalize_incomplete_returns_409_with_missing_chunks(self, client):
        session_id = init_session(client)
        put_chunk(client, session_id, 0, b"a")
        put_chunk(client, session_id, 2, b"c")

        response = finalize(client, session_id, 3)

        data = response.get_json()
        assert response.status_code == 409
        assert data["error"] == "incomplete_upload"
        assert data["details"] == {"missing_chunks": [1], "chunks_received": 2}

    def test_finalize_twice_returns_404(self, client):
        session_id = init_session(client)
        put_chunk(client, session_id, 0, b"a")
        assert finalize(client, session_id, 1).status_code == 201

        response = finalize(client, session_id, 1)

        assert response.status_code == 404

    def test_finalize_owner_mismatch_returns_400(self, client):
        session_id = init_session(client, owner="lead-42")
        put_chunk(client, session_id, 0, b"a")

        response = finalize(client, session_id, 1, owner="lead-43")

        assert response.status_code == 400

    @pytest.mark.parametrize("count", ["three", -1])
    def test_finalize_invalid_count_returns_400(self, client, count):
        session_id = init_session(client)

        response = client.post(
            f"/api/uploads/{session_id}/finalize",
            json={"expectedChunkCount": count, "ownerRecordId": "lead-42"},
            headers=HEADERS
        )

        assert response.status_code == 400

    def test_finalize_storage_failure_returns_507(self, client, app):
        session_id = init_session(client)
        put_chunk(client, session_id, 0, b"a")
        storage = app.config["STORAGE"]
        storage.save_recording = MagicMock(side_effect=StorageError("disk full"))

        response = finalize(client, session_id, 1)

        assert response.status_code == 507
        assert response.get_json()["error"] == "storage_error"
        assert app.config["SESSION_STORE"].get(session_id).chunks_received == 1


class TestCancelEndpoint:
    """DELETE /api/uploads/<id> のテスト"""

    def test_cancel_returns_canceled(self, client):
        session_id = init_session(client)
        put_chunk(client, session_id, 0, b"a")

        response = client.delete(f"/api/uploads/{session_id}", headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json() == {"status": "canceled"}
        assert put_chunk(client, session_id, 1, b"b").status_code == 404

    def test_cancel_unknown_session_succeeds(self, client):
        response = client.delete("/api/uploads/AAAAAAAAAAAAAAAAAAAAAA", headers=HEADERS)

        assert response.status_code == 200


class TestRecordingEndpoints:
    """GET / DELETE /api/recordings/<id> のテスト"""

    @pytest.fixture
    def payload(self):
        return bytes(i % 256 for i in range(5000))

    @pytest.fixture
    def recording_id(self, client, payload):
        return upload(client, payload, filename="call.mp3", chunk_size=2048)["recordingId"]

    def test_full_stream(self, client, recording_id, payload):
        response = client.get(f"/api/recordings/{recording_id}", headers=HEADERS)

        assert response.status_code == 200
        assert response.headers["Accept-Ranges"] == "bytes"
        assert response.headers["Content-Type"] == "audio/mpeg"
        assert response.data == payload

    def test_range_first_hundred_bytes(self, client, recording_id, payload):
        response = client.get(
            f"/api/recordings/{recording_id}",
            headers={**HEADERS, "Range": "bytes=0-99"}
        )

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "bytes 0-99/5000"
        assert response.data == payload[:100]

    def test_range_tail(self, client, recording_id, payload):
        response = client.get(
            f"/api/recordings/{recording_id}",
            headers={**HEADERS, "Range": "bytes=4900-"}
        )

        assert response.status_code == 206
        assert response.data == payload[-100:]

    def test_range_beyond_size_returns_416(self, client, recording_id):
        response = client.get(
            f"/api/recordings/{recording_id}",
            headers={**HEADERS, "Range": "bytes=5000-1000000"}
        )

        assert response.status_code == 416
        assert response.headers["Content-Range"] == "bytes */5000"
        assert response.get_json()["error"] == "invalid_range"

    def test_unknown_recording_returns_404(self, client):
        response = client.get("/api/recordings/missing", headers=HEADERS)

        assert response.status_code == 404
        assert response.get_json()["error"] == "recording_not_found"

    def test_delete_recording(self, client, recording_id):
        response = client.delete(f"/api/recordings/{recording_id}", headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json() == {"status": "deleted"}
        assert client.get(f"/api/recordings/{recording_id}", headers=HEADERS).status_code == 404


class TestOwnershipHooks:
    """owner_check と on_recording_finalized のテスト"""

    @pytest.fixture
    def owner_check(self):
        return MagicMock(side_effect=lambda caller_id, owner: owner == "lead-42")

    @pytest.fixture
    def attach_hook(self):
        return MagicMock()

    @pytest.fixture
    def client(self, test_config, owner_check, attach_hook):
        app = create_app(test_config, owner_check=owner_check, on_recording_finalized=attach_hook)
        app.config["TESTING"] = True
        return app.test_client()

    def test_init_for_foreign_record_returns_403(self, client, owner_check):
        response = client.post(
            "/api/uploads",
            json={"filename": "call.m4a", "ownerRecordId": "lead-99"},
            headers=HEADERS
        )

        assert response.status_code == 403
        assert response.get_json()["error"] == "forbidden"
        owner_check.assert_called_with("telecaller-7", "lead-99")

    def test_finalize_calls_attach_hook(self, client, attach_hook):
        result = upload(client, b"audio")

        attach_hook.assert_called_once()
        recording = attach_hook.call_args[0][0]
        assert recording.id == result["recordingId"]
        assert recording.owner_record_id == "lead-42"

    def test_attach_hook_failure_keeps_recording(self, client, attach_hook):
        attach_hook.side_effect = RuntimeError("call log missing")

        result = upload(client, b"audio")

        response = client.get(f"/api/recordings/{result['recordingId']}", headers=HEADERS)
        assert response.status_code == 200

    def test_stream_denied_when_owner_check_fails(self, client, owner_check):
        result = upload(client, b"audio")
        owner_check.side_effect = lambda caller_id, owner: False

        response = client.get(f"/api/recordings/{result['recordingId']}", headers=HEADERS)

        assert response.status_code == 403


class TestErrorResponses:
    """エラーレスポンス作成のテスト"""

    def test_create_error_response(self, app):
        with app.app_context():
            response, status = create_error_response("bad_request", "oops", 400, {"field": "x"})

        assert status == 400
        assert response.get_json() == {
            "error": "bad_request",
            "message": "oops",
            "status_code": 400,
            "details": {"field": "x"}
        }

    def test_unknown_route_returns_404_json(self, client):
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.get_json()["error"] == "not_found"

    def test_method_not_allowed_returns_405_json(self, client):
        response = client.patch("/api/uploads", headers=HEADERS)

        assert response.status_code == 405
        assert response.get_json()["error"] == "method_not_allowed"

    @pytest.mark.parametrize("data,fields,expected", [
        (None, None, False),
        ([1, 2], None, False),
        ({"a": 1}, ["a"], True),
        ({"a": ""}, ["a"], False),
        ({}, ["a", "b"], False),
    ])
    def test_validate_json_request(self, data, fields, expected):
        is_valid, message = validate_json_request(data, fields)

        assert is_valid is expected
        assert (message is None) is expected


class TestStructuredLogging:
    """構造化ロギングのテスト"""

    def test_configure_structlog_accepts_valid_log_levels(self):
        for level in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            configure_structlog(level)

    def test_get_logger_returns_bound_logger(self):
        configure_structlog("INFO")
        logger = get_logger("test")

        assert hasattr(logger, "info")
        assert hasattr(logger, "error")

    def test_structlog_outputs_json_format(self, capsys):
        import structlog

        configure_structlog("INFO")
        logger = structlog.get_logger("test_json_output")
        logger.info("test_message", key="value")

        captured = capsys.readouterr()
        if captured.out.strip():
            log_output = json.loads(captured.out.strip().splitlines()[-1])
            assert log_output["event"] == "test_message"
            assert log_output["key"] == "value"
            assert "timestamp" in log_output
