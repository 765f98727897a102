from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .split_text import MAX_CHUNK_SIZE, MIN_CHUNK_SIZE, is_valid_chunk_size

__all__ = ["API_KEYS_ENV", "OUTPUT_FORMATS", "SynthesisConfig", "load_api_keys"]

API_KEYS_ENV = "GEMINI_API_KEYS"
OUTPUT_FORMATS = ("wav", "mp3", "ogg")


@dataclass
class SynthesisConfig:
    """
    Settings for one text-to-speech run.
    """

    temperature: float = 1.0
    voice_name: str = "Zephyr"
    chunk_size_limit: int = 1000
    max_parallel: int = 4
    model: str = "gemini-2.5-flash-preview-tts"
    output_format: str = "wav"
    output_directory: Path = field(default_factory=lambda: Path("output"))

    def validate(self) -> None:
        if not is_valid_chunk_size(self.chunk_size_limit):
            raise ValueError(
                f"Invalid chunk size {self.chunk_size_limit} "
                f"({MIN_CHUNK_SIZE}-{MAX_CHUNK_SIZE} characters)."
            )
        if self.max_parallel < 1:
            raise ValueError(f"max_parallel must be positive, got {self.max_parallel}.")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be within [0, 2], got {self.temperature}.")
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"Unsupported output format {self.output_format!r} "
                f"(expected one of {', '.join(OUTPUT_FORMATS)})."
            )

    def ensure_directories(self) -> None:
        self.output_directory.mkdir(parents=True, exist_ok=True)

    def model_parameters(self) -> Dict[str, object]:
        return {"temperature": self.temperature, "voice_name": self.voice_name}


def load_api_keys(
    raw: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> List[str]:
    """Comma separated keys from ``raw`` or the ``GEMINI_API_KEYS`` environment variable."""
    environ = os.environ if environ is None else environ
    source = raw if raw is not None else environ.get(API_KEYS_ENV, "")
    keys = [key.strip() for key in source.split(",") if key.strip()]
    if not keys:
        raise ValueError(
            f'No API keys found. Use --keys "key1,key2" or set the {API_KEYS_ENV} environment variable.'
        )
    return keys
