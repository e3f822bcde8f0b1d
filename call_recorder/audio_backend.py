"""
音声バックエンドモジュール (Audio Backend Module)

音声取得ソースを開いてファイルへ書き出すプラットフォーム機能を抽象化します。
録音エージェントはこのインターフェースのみに依存します。

SoundDeviceBackend は sounddevice (PortAudio) と soundfile (libsndfile) を
使用する実装です。ライブラリは必要になるまでインポートしないため、
サーバー側ではインストール不要です。
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Tuple
import os

from .log import get_logger
from .models import CaptureParameters, CaptureSource


class CaptureSourceUnavailable(Exception):
    """
    音声ソースを開けない

    Attributes:
        source: 対象のソース
        reason: 失敗理由
    """

    def __init__(self, source: CaptureSource, reason: str):
        super().__init__(f"{source.value}: {reason}")
        self.source = source
        self.reason = reason


class CaptureStream(ABC):
    """開かれた録音ストリーム"""

    @abstractmethod
    def start(self) -> None:
        """
        録音を開始

        Raises:
            CaptureSourceUnavailable: 開始に失敗した場合
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """録音を停止し、ファイルをフラッシュ"""
        pass

    @abstractmethod
    def close(self) -> None:
        """リソースを解放（複数回呼び出しても安全）"""
        pass

    @property
    def duration_ms(self) -> Optional[int]:
        """書き込んだ音声の長さ（不明な場合は None）"""
        return None


class AudioBackend(ABC):
    """音声取得のプラットフォーム機能"""

    @abstractmethod
    def open_stream(
        self,
        source: CaptureSource,
        params: CaptureParameters,
        file_path: str
    ) -> CaptureStream:
        """
        指定ソースでストリームを開く

        Args:
            source: 音声ソース
            params: 録音パラメータ
            file_path: 出力ファイルのパス

        Returns:
            開始前の CaptureStream

        Raises:
            CaptureSourceUnavailable: ソースを開けない場合
        """
        pass


# ソースごとの入力デバイス名の断片（MIC は既定の入力デバイス）
DEFAULT_SOURCE_DEVICES: Dict[CaptureSource, str] = {
    CaptureSource.VOICE_CALL: "monitor",
    CaptureSource.VOICE_COMMUNICATION: "echo-cancel",
    CaptureSource.VOICE_RECOGNITION: "voice",
}

# コンテナ -> (libsndfile format, subtype)
SOUNDFILE_FORMATS: Dict[str, Tuple[str, str]] = {
    "ogg": ("OGG", "VORBIS"),
    "mp3": ("MP3", "MPEG_LAYER_III"),
    "wav": ("WAV", "PCM_16"),
}

# 圧縮レベルでビットレートを指定できるコンテナ
LOSSY_CONTAINERS = frozenset({"ogg", "mp3"})
MIN_BIT_RATE = 32000
MAX_BIT_RATE = 320000


def compression_level_for(bit_rate: int) -> float:
    """
    ビットレートを libsndfile の圧縮レベル（0.0 = 最高品質, 1.0 = 最小サイズ）に変換

    MIN_BIT_RATE..MAX_BIT_RATE を線形に対応付け、範囲外は端に丸めます。
    """
    level = (MAX_BIT_RATE - bit_rate) / (MAX_BIT_RATE - MIN_BIT_RATE)
    return min(max(level, 0.0), 1.0)


def _import_audio_modules() -> Tuple[Any, Any]:
    """sounddevice と soundfile をインポート"""
    import sounddevice
    import soundfile
    return sounddevice, soundfile


class SoundDeviceStream(CaptureStream):
    """
    sounddevice の InputStream からのコールバックを soundfile に書き込むストリーム
    """

    def __init__(
        self,
        source: CaptureSource,
        sound_file: Any,
        sample_rate: int,
        stream_error: type = RuntimeError
    ):
        self.source = source
        self._input_stream: Any = None
        self._sound_file = sound_file
        self._sample_rate = sample_rate
        self._stream_error = stream_error
        self._frames_written = 0
        self._closed = False
        self.logger = get_logger(__name__)

    def attach(self, input_stream: Any) -> None:
        self._input_stream = input_stream

    def write_block(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        """InputStream のコールバック"""
        if status:
            self.logger.warning("audio_input_status", status=str(status))
        self._sound_file.write(indata)
        self._frames_written += frames

    def start(self) -> None:
        try:
            self._input_stream.start()
        except self._stream_error as e:
            raise CaptureSourceUnavailable(self.source, f"cannot start input stream: {e}") from e

    def stop(self) -> None:
        self._input_stream.stop()
        self._sound_file.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._input_stream is not None:
            self._input_stream.close()
        self._sound_file.close()

    @property
    def duration_ms(self) -> Optional[int]:
        return self._frames_written * 1000 // self._sample_rate


class SoundDeviceBackend(AudioBackend):
    """
    sounddevice / soundfile を使用する音声バックエンド

    各ソースは入力デバイス名の断片に対応付けられ、名前にその断片を含む
    入力デバイスが存在する場合のみ利用可能です。MIC は既定の入力デバイスを使います。

    Attributes:
        source_devices: ソース -> デバイス名断片
    """

    def __init__(self, source_devices: Optional[Mapping[CaptureSource, str]] = None):
        self._sd, self._sf = _import_audio_modules()
        self.source_devices = dict(DEFAULT_SOURCE_DEVICES if source_devices is None else source_devices)
        self.logger = get_logger(__name__)

    def _find_device(self, source: CaptureSource) -> Optional[int]:
        if source == CaptureSource.MIC:
            return None

        fragment = self.source_devices.get(source)
        if not fragment:
            raise CaptureSourceUnavailable(source, "no input device mapped")

        for index, device in enumerate(self._sd.query_devices()):
            if device["max_input_channels"] > 0 and fragment.lower() in device["name"].lower():
                return index
        raise CaptureSourceUnavailable(source, f"no input device matching {fragment!r}")

    def open_stream(
        self,
        source: CaptureSource,
        params: CaptureParameters,
        file_path: str
    ) -> CaptureStream:
        container = params.container.lower()
        if container not in SOUNDFILE_FORMATS:
            raise CaptureSourceUnavailable(source, f"container {params.container} is not supported")
        file_format, subtype = SOUNDFILE_FORMATS[container]

        device = self._find_device(source)

        options: Dict[str, Any] = {}
        if container in LOSSY_CONTAINERS:
            options["compression_level"] = compression_level_for(params.bit_rate)
        else:
            self.logger.debug("audio_bit_rate_ignored", container=container, bit_rate=params.bit_rate)

        try:
            sound_file = self._sf.SoundFile(
                file_path,
                mode="w",
                samplerate=params.sample_rate,
                channels=params.channels,
                format=file_format,
                subtype=subtype,
                **options
            )
        except (RuntimeError, ValueError, OSError) as e:
            raise CaptureSourceUnavailable(source, f"cannot open output file: {e}") from e

        stream = SoundDeviceStream(
            source, sound_file, params.sample_rate, stream_error=self._sd.PortAudioError
        )
        try:
            stream.attach(self._sd.InputStream(
                device=device,
                samplerate=params.sample_rate,
                channels=params.channels,
                callback=stream.write_block,
            ))
        except (self._sd.PortAudioError, ValueError) as e:
            sound_file.close()
            if os.path.exists(file_path):
                os.remove(file_path)
            raise CaptureSourceUnavailable(source, str(e)) from e

        self.logger.debug("audio_stream_opened", source=source.value, device=device)
        return stream
