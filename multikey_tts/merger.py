from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError
from pydub.utils import which

from .scheduler import SynthesisResult

logger = logging.getLogger(__name__)

__all__ = [
    "CodecUnavailableError",
    "ConversionResult",
    "MergeError",
    "auto_merge",
    "convert_audio",
    "convert_batch",
    "ffmpeg_available",
    "merge_results",
    "merged_file_name",
]

LOSSY_CODECS = {"mp3": "libmp3lame", "ogg": "libvorbis"}


class MergeError(RuntimeError):
    def __init__(self, message: str, *, failed_indices: Sequence[int] = ()) -> None:
        super().__init__(message)
        self.failed_indices = list(failed_indices)


class CodecUnavailableError(MergeError):
    """The ffmpeg binary is needed for the requested operation but was not found."""


@dataclass(frozen=True)
class ConversionResult:
    original: Path
    converted: Path
    success: bool
    error: Optional[str] = None


def ffmpeg_available() -> bool:
    return which("ffmpeg") is not None


def merged_file_name(
    session_id: str, output_format: str = "wav", now: Optional[datetime] = None
) -> str:
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    stamp = stamp.replace(":", "-").replace(".", "-")
    return f"merged_{session_id}_{stamp}.{output_format}"


def merge_results(
    results: Sequence[SynthesisResult],
    output_path: Path,
    *,
    expected_count: Optional[int] = None,
    silence_gap_ms: int = 0,
) -> Path:
    """
    Concatenate the chunk files of ``results`` in ``sequence_index`` order.

    Merging is refused when any result failed or has no output file, and, when
    ``expected_count`` is given, unless every index ``0..expected_count-1`` has
    exactly one result. The output format follows the extension of ``output_path``.
    """
    if not results:
        raise MergeError("No chunk results provided for merging.")

    failed = sorted(result.sequence_index for result in results if not result.succeeded)
    if failed:
        raise MergeError(
            f"Refusing to merge: {len(failed)} of {len(results)} chunks failed "
            f"(indices {', '.join(str(index) for index in failed)}).",
            failed_indices=failed,
        )

    indices = [result.sequence_index for result in results]
    if len(set(indices)) != len(indices):
        raise MergeError("Refusing to merge: duplicate chunk indices in results.")
    if expected_count is not None:
        gaps = sorted(set(range(expected_count)) - set(indices))
        if gaps or len(indices) != expected_count:
            raise MergeError(
                f"Refusing to merge: expected {expected_count} chunks, missing indices {gaps}.",
                failed_indices=gaps,
            )

    ordered = sorted(results, key=lambda result: result.sequence_index)
    missing = [result.sequence_index for result in ordered if result.output_file is None]
    if missing:
        raise MergeError(
            f"Refusing to merge: chunks {missing} have no output file.", failed_indices=missing
        )

    output_path = Path(output_path)
    output_format = output_path.suffix.lstrip(".").lower() or "wav"
    needs_codec = output_format != "wav" or any(
        result.output_file.suffix.lower() != ".wav" for result in ordered
    )
    if needs_codec and not ffmpeg_available():
        raise CodecUnavailableError(
            f"ffmpeg is required to merge into {output_format} or from non-WAV chunks."
        )

    logger.info("Merging %d audio chunks into %s", len(ordered), output_path)
    merged: Optional[AudioSegment] = None
    for position, result in enumerate(ordered):
        segment = AudioSegment.from_file(result.output_file)
        merged = segment if merged is None else merged + segment
        if position < len(ordered) - 1 and silence_gap_ms > 0:
            merged += _matching_silence(segment, silence_gap_ms)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    merged.export(output_path, **_export_options(output_format))
    logger.info("Merged %d chunks into %s", len(ordered), output_path)
    return output_path


def auto_merge(
    results: Sequence[SynthesisResult],
    output_directory: Path,
    session_id: str,
    output_format: str = "wav",
    *,
    expected_count: Optional[int] = None,
) -> Path:
    name = merged_file_name(session_id, output_format)
    return merge_results(results, Path(output_directory) / name, expected_count=expected_count)


def convert_audio(
    input_path: Path, output_format: str, output_path: Optional[Path] = None
) -> Path:
    """Transcode a WAV artifact to mp3 or ogg through ffmpeg."""
    if output_format not in LOSSY_CODECS:
        raise ValueError(f"Unsupported conversion format: {output_format}")
    if not ffmpeg_available():
        raise CodecUnavailableError(f"ffmpeg is required to convert audio to {output_format}.")

    input_path = Path(input_path)
    target = Path(output_path) if output_path else input_path.with_suffix(f".{output_format}")
    segment = AudioSegment.from_file(input_path)
    segment.export(target, **_export_options(output_format))
    logger.info("Converted %s to %s", input_path.name, target.name)
    return target


def convert_batch(
    input_paths: Sequence[Path],
    output_format: str = "mp3",
    output_directory: Optional[Path] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> List[ConversionResult]:
    results: List[ConversionResult] = []
    for completed, input_path in enumerate(input_paths, start=1):
        input_path = Path(input_path)
        target = None
        if output_directory is not None:
            target = Path(output_directory) / f"{input_path.stem}.{output_format}"
        try:
            converted = convert_audio(input_path, output_format, target)
            results.append(ConversionResult(original=input_path, converted=converted, success=True))
        except (CodecUnavailableError, CouldntDecodeError, ValueError, OSError) as exc:
            logger.warning("Conversion of %s failed: %s", input_path, exc)
            results.append(
                ConversionResult(
                    original=input_path, converted=input_path, success=False, error=str(exc)
                )
            )
        if on_progress is not None:
            on_progress(completed, len(input_paths))
    return results


def _export_options(output_format: str) -> dict:
    if output_format in LOSSY_CODECS:
        return {
            "format": output_format,
            "codec": LOSSY_CODECS[output_format],
            "bitrate": "128k",
            "parameters": ["-ac", "2", "-ar", "44100"],
        }
    return {"format": output_format}


def _matching_silence(segment: AudioSegment, duration_ms: int) -> AudioSegment:
    silence = AudioSegment.silent(duration=duration_ms, frame_rate=segment.frame_rate)
    silence = silence.set_channels(segment.channels)
    silence = silence.set_sample_width(segment.sample_width)
    return silence
