"""
Multi-key text-to-speech pipeline.

This package exposes the building blocks used by the CLI entry point:

- Sentence-aware text chunking (`split_text`).
- The credential pool handing API keys to one caller at a time (`credentials`).
- The bounded-parallel synthesis scheduler (`scheduler`).
- WAV container synthesis for raw PCM payloads (`container`).
- Engine abstractions and concrete implementations (`tts_engine`).
- Ordered merging and lossy conversion of chunk files (`merger`).
- Run configuration (`config`) and run reports (`metadata`).
"""

from .split_text import (
    TextChunk,
    chunk_text,
    hard_split_by_length,
    is_valid_chunk_size,
    split_into_sentences,
    split_long_sentence,
)
from .credentials import Credential, CredentialPool, PoolStats, random_recovery
from .scheduler import (
    SynthesisResult,
    SynthesisScheduler,
    chunks_to_resubmit,
    estimate_duration_ms,
)
from .container import AudioFormatDescriptor, build_container, encode_payload, parse_format
from .tts_engine import GoogleGenAITtsEngine, MockTtsEngine, SynthesisError, TtsEngine
from .merger import (
    CodecUnavailableError,
    MergeError,
    auto_merge,
    convert_audio,
    convert_batch,
    ffmpeg_available,
    merge_results,
    merged_file_name,
)
from .config import SynthesisConfig, load_api_keys
from .metadata import MetadataBuilder

__all__ = [
    "TextChunk",
    "chunk_text",
    "split_into_sentences",
    "split_long_sentence",
    "hard_split_by_length",
    "is_valid_chunk_size",
    "Credential",
    "CredentialPool",
    "PoolStats",
    "random_recovery",
    "SynthesisResult",
    "SynthesisScheduler",
    "chunks_to_resubmit",
    "estimate_duration_ms",
    "AudioFormatDescriptor",
    "parse_format",
    "build_container",
    "encode_payload",
    "TtsEngine",
    "GoogleGenAITtsEngine",
    "MockTtsEngine",
    "SynthesisError",
    "MergeError",
    "CodecUnavailableError",
    "merge_results",
    "auto_merge",
    "merged_file_name",
    "convert_audio",
    "convert_batch",
    "ffmpeg_available",
    "SynthesisConfig",
    "load_api_keys",
    "MetadataBuilder",
]
