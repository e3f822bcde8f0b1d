"""
Call Recorder

通話録音の取得・チャンクアップロード・レンジ再生を提供するシステム
"""

__version__ = "0.1.0"

from call_recorder.config import ClientConfig, ConfigurationError, ServerConfig

__all__ = ["ClientConfig", "ConfigurationError", "ServerConfig"]
