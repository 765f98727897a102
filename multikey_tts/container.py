from __future__ import annotations

import logging
import mimetypes
import re
import struct
from dataclasses import dataclass
from typing import Tuple

logger = logging.getLogger(__name__)

__all__ = [
    "AudioFormatDescriptor",
    "SUPPORTED_MIME_TYPES",
    "WAV_HEADER_SIZE",
    "build_container",
    "encode_payload",
    "extension_for_mime",
    "is_raw_pcm",
    "is_supported_mime",
    "parse_format",
]

WAV_HEADER_SIZE = 44
SUPPORTED_MIME_TYPES = (
    "audio/wav",
    "audio/mpeg",
    "audio/mp3",
    "audio/ogg",
    "audio/webm",
    "audio/L16",
    "audio/pcm",
)
_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/wave": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/ogg": "ogg",
    "audio/webm": "webm",
}
_RAW_PCM_PATTERN = re.compile(r"audio/l\d+|pcm", re.IGNORECASE)
# RIFF header: ids are 4-byte strings, every numeric field little-endian.
_HEADER_STRUCT = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class AudioFormatDescriptor:
    channel_count: int = 1
    sample_rate_hz: int = 24000
    bits_per_sample: int = 16

    @property
    def byte_rate(self) -> int:
        return self.sample_rate_hz * self.channel_count * self.bits_per_sample // 8

    @property
    def block_align(self) -> int:
        return self.channel_count * self.bits_per_sample // 8


def parse_format(mime_type: str) -> AudioFormatDescriptor:
    """
    Read channel count, sample rate and bit depth from a MIME-like type string.

    ``audio/L24;rate=48000`` gives 24-bit samples at 48 kHz. Anything that cannot
    be read keeps the defaults of mono, 24 kHz, 16-bit.
    """
    channels = 1
    rate = 24000
    bits = 16

    fragments = [fragment.strip() for fragment in (mime_type or "").split(";")]
    _, _, subtype = fragments[0].partition("/")
    if subtype[:1] in ("L", "l"):
        try:
            bits = int(subtype[1:])
        except ValueError:
            logger.debug("No bit depth in mime subtype %s", subtype)

    for fragment in fragments[1:]:
        key, _, value = fragment.partition("=")
        key = key.strip().lower()
        if key == "rate":
            try:
                rate = int(value)
            except ValueError:
                logger.warning("Unable to parse rate from mime type %s", mime_type)
        elif key == "channels":
            try:
                channels = int(value)
            except ValueError:
                logger.warning("Unable to parse channels from mime type %s", mime_type)

    return AudioFormatDescriptor(channel_count=channels, sample_rate_hz=rate, bits_per_sample=bits)


def build_container(payload: bytes, descriptor: AudioFormatDescriptor) -> bytes:
    """Prefix raw PCM samples with a canonical 44-byte WAV header."""
    data_size = len(payload)
    header = _HEADER_STRUCT.pack(
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        1,
        descriptor.channel_count,
        descriptor.sample_rate_hz,
        descriptor.byte_rate,
        descriptor.block_align,
        descriptor.bits_per_sample,
        b"data",
        data_size,
    )
    return header + payload


def is_supported_mime(mime_type: str) -> bool:
    lowered = (mime_type or "").lower()
    return any(supported.lower() in lowered for supported in SUPPORTED_MIME_TYPES)


def is_raw_pcm(mime_type: str) -> bool:
    return bool(_RAW_PCM_PATTERN.search(mime_type or ""))


def extension_for_mime(mime_type: str) -> str:
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    if base in _EXTENSIONS:
        return _EXTENSIONS[base]
    guessed = (mimetypes.guess_extension(base) or "").lstrip(".")
    return guessed or "wav"


def encode_payload(payload: bytes, mime_type: str) -> Tuple[bytes, str]:
    """
    Return file bytes and extension for one synthesized payload.

    Raw linear PCM gets a WAV header; self-describing containers pass through.
    """
    if is_raw_pcm(mime_type):
        logger.debug("Wrapping %d bytes of %s in a WAV container", len(payload), mime_type)
        return build_container(payload, parse_format(mime_type)), "wav"
    return payload, extension_for_mime(mime_type)
