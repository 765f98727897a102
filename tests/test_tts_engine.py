import base64
from types import SimpleNamespace

import pytest

from multikey_tts.credentials import Credential
from multikey_tts.split_text import TextChunk
from multikey_tts.tts_engine import (
    AudioFragment,
    GoogleGenAITtsEngine,
    MockTtsEngine,
    SynthesisError,
    collect_audio,
)


def _credential(secret="AIzaSyTestKey0001"):
    return Credential(id="key_test", secret=secret, display_name="AIza...0001")


def _chunk(index=0, text="Hello there."):
    return TextChunk(id=f"chunk_{index}", sequence_index=index, total_count=1, text=text)


def _response(*parts):
    content = SimpleNamespace(parts=list(parts))
    return SimpleNamespace(candidates=[SimpleNamespace(content=content)])


def _inline(mime_type, data):
    return SimpleNamespace(inline_data=SimpleNamespace(mime_type=mime_type, data=data))


class FakeModels:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def generate_content_stream(self, *, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        return iter(self.responses)


class FakeClient:
    def __init__(self, responses):
        self.models = FakeModels(responses)


def test_google_engine_wraps_pcm_stream_in_wav(tmp_path):
    pcm = b"\x01\x00" * 100
    responses = [
        SimpleNamespace(candidates=None),
        _response(_inline("audio/L16;codec=pcm;rate=24000", pcm[:100])),
        _response(_inline("audio/L16;codec=pcm;rate=24000", base64.b64encode(pcm[100:]).decode())),
    ]
    clients = {}

    def _factory(api_key):
        clients[api_key] = FakeClient(responses)
        return clients[api_key]

    engine = GoogleGenAITtsEngine(
        output_directory=tmp_path,
        voice_name="Kore",
        temperature=0.7,
        client_factory=_factory,
    )
    result = engine.synthesize_chunk(_chunk(3), _credential())

    assert result.succeeded
    assert result.sequence_index == 3
    assert result.output_file.parent == tmp_path
    assert result.output_file.name.startswith("audio_chunk_003_")
    assert result.output_file.suffix == ".wav"
    data = result.output_file.read_bytes()
    assert data[:4] == b"RIFF"
    assert data[44:] == pcm
    assert result.byte_size == len(data)

    call = clients["AIzaSyTestKey0001"].models.calls[0]
    assert call["model"] == "gemini-2.5-flash-preview-tts"
    assert call["config"].temperature == 0.7
    assert call["config"].speech_config.voice_config.prebuilt_voice_config.voice_name == "Kore"


def test_google_engine_reuses_client_per_credential(tmp_path):
    created = []

    def _factory(api_key):
        created.append(api_key)
        return FakeClient([_response(_inline("audio/wav", b"RIFFdata"))])

    engine = GoogleGenAITtsEngine(output_directory=tmp_path, client_factory=_factory)
    engine.synthesize_chunk(_chunk(0), _credential())
    engine.synthesize_chunk(_chunk(1), _credential())

    assert created == ["AIzaSyTestKey0001"]


def test_google_engine_reports_failure_without_usable_audio(tmp_path):
    responses = [_response(_inline("audio/flac", b"fLaC")), _response(SimpleNamespace(inline_data=None))]
    engine = GoogleGenAITtsEngine(
        output_directory=tmp_path, client_factory=lambda api_key: FakeClient(responses)
    )

    result = engine.synthesize_chunk(_chunk(), _credential())

    assert not result.succeeded
    assert result.output_file is None
    assert "no usable audio" in result.error_detail
    assert result.credential_used == "key_test"
    assert list(tmp_path.iterdir()) == []


def test_google_engine_reports_remote_errors(tmp_path):
    def _factory(api_key):
        raise PermissionError("API key not valid")

    engine = GoogleGenAITtsEngine(output_directory=tmp_path, client_factory=_factory)
    result = engine.synthesize_chunk(_chunk(), _credential())

    assert not result.succeeded
    assert result.error_detail == "API key not valid"


def test_collect_audio_skips_unsupported_and_mismatched_fragments():
    payload, extension = collect_audio(
        [
            AudioFragment(mime_type="audio/flac", data=b"skip"),
            AudioFragment(mime_type="audio/mpeg", data=b"one"),
            AudioFragment(mime_type="audio/ogg", data=b"skip"),
            AudioFragment(mime_type="audio/mpeg", data=b"two"),
            AudioFragment(mime_type="audio/mpeg", data=None),
        ]
    )

    assert payload == b"onetwo"
    assert extension == "mp3"


def test_collect_audio_defaults_missing_mime_to_wav():
    payload, extension = collect_audio([AudioFragment(mime_type=None, data=b"RIFFxxxx")])

    assert payload == b"RIFFxxxx"
    assert extension == "wav"


def test_collect_audio_raises_without_payload():
    with pytest.raises(SynthesisError):
        collect_audio([])


def test_mock_engine_writes_silent_wav(tmp_path):
    engine = MockTtsEngine(output_directory=tmp_path / "chunks", base_duration_ms=100, per_char_ms=0)

    result = engine.synthesize_chunk(_chunk(), _credential())

    assert result.succeeded
    data = result.output_file.read_bytes()
    assert len(data) == 44 + 24000 * 100 // 1000 * 2


def test_mock_engine_fails_for_listed_secret(tmp_path):
    engine = MockTtsEngine(output_directory=tmp_path, failing_secrets=["AIzaSyTestKey0001"])

    result = engine.synthesize_chunk(_chunk(), _credential())

    assert not result.succeeded
    assert "rejected" in result.error_detail


def test_collect_audio_accepts_lower_case_pcm_mime():
    payload, extension = collect_audio([AudioFragment(mime_type="audio/l16;rate=24000", data=b"\x00\x00" * 8)])

    assert extension == "wav"
    assert payload[:4] == b"RIFF"
    assert payload[44:] == b"\x00\x00" * 8
