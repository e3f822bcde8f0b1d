"""
テスト共通のフィクスチャ

requests のリクエストを Flask のテストクライアントへ転送するアダプターを提供し、
アップロードクライアントを実サーバーなしでサーバー実装に対して動かします。
"""

from urllib.parse import urlsplit

import pytest
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from call_recorder.app import create_app
from call_recorder.config import ServerConfig


SERVER_URL = "http://recorder.test"


class FlaskTestAdapter(BaseAdapter):
    """requests.Session に mount して Flask アプリへリクエストを転送"""

    def __init__(self, app):
        super().__init__()
        self.client = app.test_client()

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        parts = urlsplit(request.url)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
        headers = {
            key: value for key, value in request.headers.items()
            if key.lower() != "content-length"
        }

        flask_response = self.client.open(
            path,
            method=request.method,
            data=request.body,
            headers=headers
        )

        response = requests.Response()
        response.status_code = flask_response.status_code
        response.reason = flask_response.status.split(" ", 1)[-1]
        response.headers = CaseInsensitiveDict(flask_response.headers)
        response._content = flask_response.get_data()
        response.encoding = "utf-8"
        response.url = request.url
        response.request = request
        return response

    def close(self):
        pass


@pytest.fixture
def server_app(tmp_path):
    """テスト用のサーバーアプリケーション"""
    config = ServerConfig(
        recordings_dir=str(tmp_path / "server" / "recordings"),
        upload_temp_dir=str(tmp_path / "server" / "uploads"),
        database_path=str(tmp_path / "server_meta.db"),
        max_chunk_bytes=2 * 1024 * 1024,
        session_ttl_seconds=3600,
        log_level="DEBUG"
    )
    app = create_app(config)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def http_session(server_app):
    """server_app へ転送する requests.Session"""
    session = requests.Session()
    session.mount(SERVER_URL, FlaskTestAdapter(server_app))
    yield session
    session.close()


@pytest.fixture
def server_url():
    return SERVER_URL
