from __future__ import annotations

import base64
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .container import encode_payload, is_raw_pcm, is_supported_mime
from .credentials import Credential
from .scheduler import SynthesisResult
from .split_text import TextChunk

logger = logging.getLogger(__name__)

__all__ = [
    "AudioFragment",
    "GoogleGenAITtsEngine",
    "MockTtsEngine",
    "SynthesisError",
    "TtsEngine",
    "audio_file_name",
    "collect_audio",
]

DEFAULT_MIME_TYPE = "audio/wav"


class SynthesisError(RuntimeError):
    """The remote engine returned no usable audio for a chunk."""


@dataclass(frozen=True)
class AudioFragment:
    mime_type: Optional[str]
    data: Union[bytes, str, None]


def audio_file_name(sequence_index: int, extension: str = "wav") -> str:
    return f"audio_chunk_{sequence_index:03d}_{int(time.time() * 1000)}.{extension}"


class TtsEngine(ABC):
    """
    Text-to-speech engine that streams audio fragments for one chunk of text.

    ``synthesize_chunk`` collects the supported fragments, wraps raw PCM in a WAV
    container and writes one file per chunk into ``output_directory``.
    """

    def __init__(self, *, output_directory: Path) -> None:
        self.output_directory = Path(output_directory)

    @abstractmethod
    def stream_audio(self, text: str, credential: Credential) -> Iterable[AudioFragment]:
        """
        Yield the audio fragments produced for ``text`` using ``credential``.
        """

    def descriptor(self) -> str:
        return self.__class__.__name__

    def synthesize_chunk(self, chunk: TextChunk, credential: Credential) -> SynthesisResult:
        logger.info(
            "Using credential %s (hit #%d) for chunk %d",
            credential.display_name,
            credential.total_uses + 1,
            chunk.sequence_index,
        )
        try:
            payload, extension = collect_audio(self.stream_audio(chunk.text, credential))
            self.output_directory.mkdir(parents=True, exist_ok=True)
            path = self.output_directory / audio_file_name(chunk.sequence_index, extension)
            path.write_bytes(payload)
        except Exception as exc:
            logger.error(
                "Failed to synthesize chunk %s with credential %s: %s",
                chunk.id,
                credential.display_name,
                exc,
            )
            return SynthesisResult.failure(chunk, credential, str(exc) or exc.__class__.__name__)

        logger.info("Audio chunk saved: %s (%d bytes)", path, len(payload))
        return SynthesisResult(
            chunk_id=chunk.id,
            sequence_index=chunk.sequence_index,
            output_file=path,
            byte_size=len(payload),
            succeeded=True,
            credential_used=credential.id,
            credential_name=credential.display_name,
        )


def collect_audio(fragments: Iterable[AudioFragment]) -> Tuple[bytes, str]:
    """
    Join the usable fragments of one response into file bytes and an extension.

    Fragments without data or with an unsupported MIME type are skipped. The first
    usable fragment fixes the MIME type for the rest of the stream.
    """
    mime_type: Optional[str] = None
    payloads: List[bytes] = []
    for fragment in fragments:
        if not fragment.data:
            continue
        fragment_mime = fragment.mime_type or DEFAULT_MIME_TYPE
        logger.debug("Received audio fragment: %s", fragment_mime)
        if not is_supported_mime(fragment_mime):
            logger.warning("Unsupported audio format skipped: %s", fragment_mime)
            continue
        if mime_type is None:
            mime_type = fragment_mime
        elif fragment_mime != mime_type:
            logger.warning("Skipping %s fragment in a %s stream", fragment_mime, mime_type)
            continue

        data = fragment.data
        if isinstance(data, str):
            data = base64.b64decode(data)
        payloads.append(data)

    if mime_type is None or not payloads:
        raise SynthesisError("Engine returned no usable audio payload.")

    if len(payloads) > 1 and not is_raw_pcm(mime_type):
        logger.debug("Concatenating %d %s fragments", len(payloads), mime_type)
    return encode_payload(b"".join(payloads), mime_type)


class MockTtsEngine(TtsEngine):
    """
    Offline engine producing silent 16-bit PCM whose length follows the text length.

    Credentials whose secret is listed in ``failing_secrets`` always fail.
    """

    def __init__(
        self,
        *,
        output_directory: Path,
        base_duration_ms: int = 500,
        per_char_ms: int = 30,
        sample_rate: int = 24000,
        failing_secrets: Iterable[str] = (),
    ) -> None:
        super().__init__(output_directory=output_directory)
        self._base_duration_ms = base_duration_ms
        self._per_char_ms = per_char_ms
        self._sample_rate = sample_rate
        self._failing_secrets = set(failing_secrets)

    def stream_audio(self, text: str, credential: Credential) -> Iterator[AudioFragment]:
        if credential.secret in self._failing_secrets:
            raise SynthesisError(f"Credential {credential.display_name} rejected by mock engine.")
        duration_ms = self._base_duration_ms + len(text) * self._per_char_ms
        frames = self._sample_rate * duration_ms // 1000
        yield AudioFragment(
            mime_type=f"audio/L16;codec=pcm;rate={self._sample_rate}",
            data=b"\x00\x00" * frames,
        )


class GoogleGenAITtsEngine(TtsEngine):
    """
    Google Generative AI TTS implementation using the ``google-genai`` client.

    One client is created per credential and reused for later chunks.
    """

    def __init__(
        self,
        *,
        output_directory: Path,
        model: str = "gemini-2.5-flash-preview-tts",
        voice_name: str = "Zephyr",
        temperature: float = 1.0,
        client_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        try:
            from google import genai  # type: ignore
            from google.genai import types  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "google-genai is required for GoogleGenAITtsEngine but is not installed."
            ) from exc

        super().__init__(output_directory=output_directory)
        self._types = types
        self._client_factory = client_factory or (lambda api_key: genai.Client(api_key=api_key))
        self._clients: Dict[str, Any] = {}
        self._clients_lock = threading.Lock()
        self._model = model
        self._voice_name = voice_name
        self._temperature = temperature

    def descriptor(self) -> str:
        return f"{self.__class__.__name__}({self._model})"

    def stream_audio(self, text: str, credential: Credential) -> Iterator[AudioFragment]:
        types = self._types
        content = types.Content(role="user", parts=[types.Part.from_text(text=text)])
        generate_config = types.GenerateContentConfig(
            temperature=self._temperature,
            response_modalities=["audio"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self._voice_name)
                )
            ),
        )

        client = self._client_for(credential)
        for chunk in client.models.generate_content_stream(
            model=self._model,
            contents=[content],
            config=generate_config,
        ):
            candidate = (chunk.candidates or [None])[0]
            if not candidate or not candidate.content or not candidate.content.parts:
                continue
            for response_part in candidate.content.parts:
                inline = getattr(response_part, "inline_data", None)
                if inline and inline.data:
                    yield AudioFragment(mime_type=inline.mime_type, data=inline.data)

    def _client_for(self, credential: Credential) -> Any:
        with self._clients_lock:
            client = self._clients.get(credential.id)
            if client is None:
                client = self._client_factory(credential.secret)
                self._clients[credential.id] = client
            return client
