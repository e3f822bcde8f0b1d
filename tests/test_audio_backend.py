"""
SoundDeviceBackend のテスト

sounddevice / soundfile をモックに差し替えて、デバイス選択とファイル出力の
エラーハンドリングを検証します。
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from call_recorder.audio_backend import (
    CaptureSourceUnavailable,
    SoundDeviceBackend,
    SoundDeviceStream,
    compression_level_for,
)
from call_recorder.models import CaptureParameters, CaptureSource


class FakePortAudioError(Exception):
    pass


DEVICES = [
    {"name": "HDA Intel PCH: ALC3246 Analog", "max_input_channels": 2},
    {"name": "Monitor of Built-in Audio", "max_input_channels": 2},
    {"name": "echo-cancel output", "max_input_channels": 0},
]


@pytest.fixture
def fake_sd():
    return SimpleNamespace(
        PortAudioError=FakePortAudioError,
        query_devices=MagicMock(return_value=DEVICES),
        InputStream=MagicMock(name="InputStream")
    )


@pytest.fixture
def fake_sf():
    return SimpleNamespace(SoundFile=MagicMock(name="SoundFile"))


@pytest.fixture
def backend(fake_sd, fake_sf):
    with patch("call_recorder.audio_backend._import_audio_modules", return_value=(fake_sd, fake_sf)):
        yield SoundDeviceBackend()


class TestDeviceSelection:
    """デバイス選択のテスト"""

    def test_mic_uses_default_device(self, backend, fake_sd, tmp_path):
        backend.open_stream(CaptureSource.MIC, CaptureParameters(), str(tmp_path / "call.ogg"))

        assert fake_sd.InputStream.call_args.kwargs["device"] is None

    def test_voice_call_uses_monitor_device(self, backend, fake_sd, tmp_path):
        backend.open_stream(CaptureSource.VOICE_CALL, CaptureParameters(), str(tmp_path / "call.ogg"))

        kwargs = fake_sd.InputStream.call_args.kwargs
        assert kwargs["device"] == 1
        assert kwargs["samplerate"] == 44100
        assert kwargs["channels"] == 1

    def test_output_only_device_is_unavailable(self, backend, tmp_path):
        with pytest.raises(CaptureSourceUnavailable) as exc_info:
            backend.open_stream(CaptureSource.VOICE_COMMUNICATION, CaptureParameters(), str(tmp_path / "call.ogg"))

        assert exc_info.value.source == CaptureSource.VOICE_COMMUNICATION

    def test_unmapped_source_is_unavailable(self, fake_sd, fake_sf, tmp_path):
        with patch("call_recorder.audio_backend._import_audio_modules", return_value=(fake_sd, fake_sf)):
            backend = SoundDeviceBackend(source_devices={CaptureSource.VOICE_CALL: "monitor"})

        with pytest.raises(CaptureSourceUnavailable):
            backend.open_stream(CaptureSource.VOICE_RECOGNITION, CaptureParameters(), str(tmp_path / "call.ogg"))


class TestOutputFile:
    """出力ファイルのテスト"""

    def test_ogg_vorbis_by_default(self, backend, fake_sf, tmp_path):
        file_path = str(tmp_path / "call.ogg")

        backend.open_stream(CaptureSource.MIC, CaptureParameters(), file_path)

        args, kwargs = fake_sf.SoundFile.call_args
        assert args == (file_path,)
        assert kwargs["mode"] == "w"
        assert kwargs["format"] == "OGG"
        assert kwargs["subtype"] == "VORBIS"

    def test_bit_rate_sets_compression_level(self, backend, fake_sf, tmp_path):
        backend.open_stream(CaptureSource.MIC, CaptureParameters(bit_rate=128000), str(tmp_path / "a.ogg"))
        default_level = fake_sf.SoundFile.call_args.kwargs["compression_level"]

        backend.open_stream(CaptureSource.MIC, CaptureParameters(bit_rate=320000), str(tmp_path / "b.ogg"))
        highest_level = fake_sf.SoundFile.call_args.kwargs["compression_level"]

        assert default_level == pytest.approx(2 / 3)
        assert highest_level == 0.0

    def test_wav_ignores_bit_rate(self, backend, fake_sf, tmp_path):
        backend.open_stream(CaptureSource.MIC, CaptureParameters(container="wav"), str(tmp_path / "call.wav"))

        kwargs = fake_sf.SoundFile.call_args.kwargs
        assert kwargs["subtype"] == "PCM_16"
        assert "compression_level" not in kwargs

    @pytest.mark.parametrize("bit_rate,expected", [
        (8000, 1.0),
        (32000, 1.0),
        (176000, 0.5),
        (320000, 0.0),
        (640000, 0.0),
    ])
    def test_compression_level_for(self, bit_rate, expected):
        assert compression_level_for(bit_rate) == pytest.approx(expected)

    def test_unsupported_container(self, backend, fake_sf, tmp_path):
        with pytest.raises(CaptureSourceUnavailable):
            backend.open_stream(CaptureSource.MIC, CaptureParameters(container="m4a"), str(tmp_path / "call.m4a"))

        fake_sf.SoundFile.assert_not_called()

    def test_output_file_error(self, backend, fake_sf, tmp_path):
        fake_sf.SoundFile.side_effect = RuntimeError("Error opening file")

        with pytest.raises(CaptureSourceUnavailable):
            backend.open_stream(CaptureSource.MIC, CaptureParameters(), str(tmp_path / "call.ogg"))

    def test_input_stream_error_removes_file(self, backend, fake_sd, fake_sf, tmp_path):
        file_path = tmp_path / "call.ogg"

        def create_file(path, **kwargs):
            file_path.write_bytes(b"OggS")
            return MagicMock()

        fake_sf.SoundFile.side_effect = create_file
        fake_sd.InputStream.side_effect = FakePortAudioError("Invalid number of channels")

        with pytest.raises(CaptureSourceUnavailable):
            backend.open_stream(CaptureSource.MIC, CaptureParameters(), str(file_path))

        assert not file_path.exists()


class TestSoundDeviceStream:
    """SoundDeviceStream のテスト"""

    @pytest.fixture
    def sound_file(self):
        return MagicMock()

    @pytest.fixture
    def stream(self, sound_file):
        stream = SoundDeviceStream(CaptureSource.MIC, sound_file, 8000, stream_error=FakePortAudioError)
        stream.attach(MagicMock())
        return stream

    def test_write_block_counts_frames(self, stream, sound_file):
        stream.write_block("block-1", 4000, None, None)
        stream.write_block("block-2", 4000, None, None)

        assert sound_file.write.call_count == 2
        assert stream.duration_ms == 1000

    def test_start_failure_is_unavailable(self, stream):
        stream._input_stream.start.side_effect = FakePortAudioError("Device unavailable")

        with pytest.raises(CaptureSourceUnavailable):
            stream.start()

    def test_stop_flushes_file(self, stream, sound_file):
        stream.stop()

        stream._input_stream.stop.assert_called_once()
        sound_file.flush.assert_called_once()

    def test_close_is_idempotent(self, stream, sound_file):
        stream.close()
        stream.close()

        sound_file.close.assert_called_once()
        stream._input_stream.close.assert_called_once()
