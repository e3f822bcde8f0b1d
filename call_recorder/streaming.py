"""
ストリーミングモジュール (Streaming Module)

確定済み録音を HTTP Range リクエストに対応して配信します。
"""

from typing import Optional, Tuple

from flask import Response

from .models import Recording
from .recording_store import RecordingStore


class InvalidRangeError(Exception):
    """
    不正な Range リクエスト

    Attributes:
        range_header: 受信した Range ヘッダー
        size: 録音ファイルのサイズ
    """

    def __init__(self, range_header: str, size: int):
        super().__init__(f"Invalid range {range_header!r} for resource of {size} bytes")
        self.range_header = range_header
        self.size = size


def _parse_range_value(value: str, default: int) -> int:
    value = value.strip()
    if value == "":
        return default
    if not value.isdecimal():
        return -1
    return int(value)


def parse_range_header(range_header: str, size: int) -> Tuple[int, int]:
    """
    Range ヘッダーを解析

    "bytes=<start>-<end>" 形式のみ対応します。start を省略した場合は 0、
    end を省略した場合は size-1 として扱います。

    Args:
        range_header: Range ヘッダーの値
        size: 録音ファイルのサイズ

    Returns:
        (start, end) のタプル（両端を含む）

    Raises:
        InvalidRangeError: 形式が不正、または 0 <= start <= end < size を満たさない場合
    """
    prefix = "bytes="
    if not range_header.startswith(prefix):
        raise InvalidRangeError(range_header, size)

    parts = range_header[len(prefix):].split("-", 1)
    if len(parts) != 2:
        raise InvalidRangeError(range_header, size)

    start = _parse_range_value(parts[0], 0)
    end = _parse_range_value(parts[1], size - 1)

    if start < 0 or end < start or end >= size:
        raise InvalidRangeError(range_header, size)

    return start, end


def stream_recording(
    recording_store: RecordingStore,
    recording: Recording,
    range_header: Optional[str]
) -> Response:
    """
    録音を配信するレスポンスを作成

    Range ヘッダーがない場合は 200 で全体を、ある場合は 206 で指定範囲のみを
    返します。範囲が不正な場合は読み出しを行わずに InvalidRangeError を送出します。

    Args:
        recording_store: 録音ストア
        recording: 配信する録音
        range_header: Range ヘッダー（なければ None）

    Returns:
        Flask レスポンス

    Raises:
        InvalidRangeError: 範囲が不正な場合
    """
    size = recording.size_bytes
    headers = {"Accept-Ranges": "bytes"}

    if range_header is None:
        start, end = 0, size - 1
        status = 200
    else:
        start, end = parse_range_header(range_header, size)
        status = 206
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"

    headers["Content-Length"] = str(end - start + 1 if size else 0)
    body = recording_store.open_range(recording, start, end) if size else iter(())

    return Response(
        body,
        status=status,
        headers=headers,
        mimetype=recording.content_type,
    )
