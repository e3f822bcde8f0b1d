"""
UploadClient のテスト

サーバー実装に対する実際のやり取りと、HTTP 結果から例外への変換を検証します。
"""

import json
from unittest.mock import MagicMock

import pytest
import requests

from call_recorder.upload_client import (
    CALLER_ID_HEADER,
    IncompleteUploadError,
    RemoteStorageError,
    SessionNotFoundError,
    TransientUploadError,
    UploadClient,
    UploadClientError,
    UploadRejectedError,
)


MIB = 1024 * 1024


def make_response(status_code, body=None, reason="", raw=None):
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason
    if raw is not None:
        response._content = raw
    else:
        response._content = json.dumps(body or {}).encode("utf-8")
    response.encoding = "utf-8"
    return response


@pytest.fixture
def mock_session():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def client(server_url, http_session):
    return UploadClient(server_url, caller_id="telecaller-7", session=http_session)


class TestUploadClientAgainstServer:
    """サーバー実装とのやり取りのテスト"""

    def test_full_upload(self, client, server_app):
        payload = bytes(i % 256 for i in range(MIB + 100))
        chunks = [payload[:MIB], payload[MIB:]]

        session_id = client.init("call_1700000000000_5550100.ogg", "lead-42")
        first = client.append(session_id, 0, chunks[0])
        second = client.append(session_id, 1, chunks[1])
        result = client.finalize(session_id, 2, "lead-42")

        assert first == {"chunksReceived": 1, "totalBytesSoFar": MIB}
        assert second == {"chunksReceived": 2, "totalBytesSoFar": MIB + 100}
        assert result["sizeBytes"] == len(payload)
        with open(result["recordingPath"], "rb") as f:
            assert f.read() == payload

        recording = server_app.config["RECORDING_STORE"].get(result["recordingId"])
        assert recording.owner_record_id == "lead-42"

    def test_sends_caller_id_header(self, client):
        assert client.session.headers[CALLER_ID_HEADER] == "telecaller-7"

    def test_finalize_with_missing_chunk(self, client):
        session_id = client.init("call.ogg", "lead-42")
        client.append(session_id, 0, b"a" * 10)
        client.append(session_id, 2, b"c" * 10)

        with pytest.raises(IncompleteUploadError) as exc_info:
            client.finalize(session_id, 3, "lead-42")

        assert exc_info.value.missing_chunks == [1]
        assert exc_info.value.chunks_received == 2
        assert exc_info.value.session_id == session_id

    def test_append_to_unknown_session(self, client):
        with pytest.raises(SessionNotFoundError) as exc_info:
            client.append("no-such-session", 0, b"data")

        assert exc_info.value.session_id == "no-such-session"

    def test_cancel_then_append(self, client):
        session_id = client.init("call.ogg", "lead-42")
        client.cancel(session_id)

        with pytest.raises(SessionNotFoundError):
            client.append(session_id, 0, b"data")

    def test_cancel_unknown_session_succeeds(self, client):
        client.cancel("no-such-session")

    def test_oversized_chunk_is_rejected(self, client):
        session_id = client.init("call.ogg", "lead-42")

        with pytest.raises(UploadRejectedError) as exc_info:
            client.append(session_id, 0, b"x" * (2 * MIB + 1))

        assert exc_info.value.status_code == 413

    def test_missing_caller_id_is_rejected(self, server_url, http_session):
        client = UploadClient(server_url, caller_id="", session=http_session)

        with pytest.raises(UploadRejectedError) as exc_info:
            client.init("call.ogg", "lead-42")

        assert exc_info.value.status_code == 401
        assert exc_info.value.error_type == "unauthorized"


class TestTransportErrors:
    """通信エラーの変換テスト"""

    @pytest.mark.parametrize("error", [
        requests.ConnectionError("connection refused"),
        requests.Timeout("read timed out"),
    ])
    def test_network_errors_are_transient(self, mock_session, error):
        mock_session.request.side_effect = error
        client = UploadClient("http://recorder.test", "telecaller-7", session=mock_session)

        with pytest.raises(TransientUploadError):
            client.append("sess-1", 0, b"data")

    def test_other_request_errors_are_not_transient(self, mock_session):
        mock_session.request.side_effect = requests.exceptions.InvalidURL("bad url")
        client = UploadClient("http://recorder.test", "telecaller-7", session=mock_session)

        with pytest.raises(UploadClientError) as exc_info:
            client.init("call.ogg", "lead-42")

        assert not isinstance(exc_info.value, TransientUploadError)

    def test_request_uses_timeout_and_base_url(self, mock_session):
        mock_session.request.return_value = make_response(200, {"chunksReceived": 1, "totalBytesSoFar": 4})
        client = UploadClient("http://recorder.test/", "telecaller-7", timeout=12.5, session=mock_session)

        client.append("sess-1", 3, b"data")

        args, kwargs = mock_session.request.call_args
        assert args == ("PUT", "http://recorder.test/api/uploads/sess-1/chunks/3")
        assert kwargs["timeout"] == 12.5
        assert kwargs["data"] == b"data"
        assert kwargs["headers"]["Content-Type"] == "application/octet-stream"


class TestResponseMapping:
    """HTTP ステータスから例外への変換テスト"""

    @pytest.fixture
    def client(self, mock_session):
        return UploadClient("http://recorder.test", "telecaller-7", session=mock_session)

    @pytest.mark.parametrize("status_code", [500, 502, 503, 429])
    def test_server_errors_are_transient(self, client, mock_session, status_code):
        mock_session.request.return_value = make_response(status_code, {"error": "internal_error"})

        with pytest.raises(TransientUploadError):
            client.append("sess-1", 0, b"data")

    def test_non_json_error_body(self, client, mock_session):
        mock_session.request.return_value = make_response(502, raw=b"<html>Bad Gateway</html>", reason="Bad Gateway")

        with pytest.raises(TransientUploadError):
            client.append("sess-1", 0, b"data")

    def test_storage_error_is_fatal(self, client, mock_session):
        mock_session.request.return_value = make_response(
            507, {"error": "storage_error", "message": "disk full"}
        )

        with pytest.raises(RemoteStorageError):
            client.finalize("sess-1", 3, "lead-42")

    def test_session_not_found(self, client, mock_session):
        mock_session.request.return_value = make_response(404, {"error": "session_not_found"})

        with pytest.raises(SessionNotFoundError):
            client.append("sess-1", 0, b"data")

    def test_plain_not_found_is_rejected(self, client, mock_session):
        mock_session.request.return_value = make_response(404, {"error": "not_found"})

        with pytest.raises(UploadRejectedError) as exc_info:
            client.append("sess-1", 0, b"data")

        assert exc_info.value.status_code == 404

    def test_incomplete_upload_details(self, client, mock_session):
        mock_session.request.return_value = make_response(409, {
            "error": "incomplete_upload",
            "message": "missing chunks",
            "details": {"missing_chunks": [1, 4], "chunks_received": 3}
        })

        with pytest.raises(IncompleteUploadError) as exc_info:
            client.finalize("sess-1", 5, "lead-42")

        assert exc_info.value.missing_chunks == [1, 4]
        assert exc_info.value.chunks_received == 3

    @pytest.mark.parametrize("status_code,error_type", [
        (400, "bad_request"),
        (403, "forbidden"),
        (413, "payload_too_large"),
    ])
    def test_client_errors_are_rejected(self, client, mock_session, status_code, error_type):
        mock_session.request.return_value = make_response(status_code, {"error": error_type, "message": "no"})

        with pytest.raises(UploadRejectedError) as exc_info:
            client.init("call.ogg", "lead-42")

        assert exc_info.value.status_code == status_code
        assert exc_info.value.error_type == error_type

    def test_init_without_session_id(self, client, mock_session):
        mock_session.request.return_value = make_response(201, {})

        with pytest.raises(UploadRejectedError):
            client.init("call.ogg", "lead-42")
