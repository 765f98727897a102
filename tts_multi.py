#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from multikey_tts.config import SynthesisConfig, load_api_keys
from multikey_tts.credentials import CredentialPool
from multikey_tts.merger import MergeError, auto_merge, convert_batch, ffmpeg_available
from multikey_tts.metadata import MetadataBuilder
from multikey_tts.scheduler import (
    SynthesisResult,
    SynthesisScheduler,
    chunks_to_resubmit,
    estimate_duration_ms,
)
from multikey_tts.split_text import TextChunk, chunk_text
from multikey_tts.tts_engine import GoogleGenAITtsEngine, MockTtsEngine, TtsEngine

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tts-multi",
        description="Text-to-speech with multiple API keys and parallel processing.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    convert = subparsers.add_parser("convert", help="Convert text to audio.")
    source = convert.add_mutually_exclusive_group(required=True)
    source.add_argument("-t", "--text", help="Text to convert.")
    source.add_argument("-f", "--file", help="Text file to convert.")
    convert.add_argument("--input-encoding", default="utf-8", help="Encoding used for the input file.")
    convert.add_argument("-o", "--output", default="./output", help="Output directory.")
    convert.add_argument("-k", "--keys", help="API keys (comma separated). Defaults to GEMINI_API_KEYS.")
    convert.add_argument("-c", "--chunk-size", type=int, default=1000, help="Chunk size in characters.")
    convert.add_argument("-p", "--parallel", type=int, default=4, help="Maximum parallel requests.")
    convert.add_argument("-v", "--voice", default="Zephyr", help="Prebuilt voice name.")
    convert.add_argument("-T", "--temperature", type=float, default=1.0, help="Temperature (0-2).")
    convert.add_argument("--model", default="gemini-2.5-flash-preview-tts", help="Google GenAI model name.")
    convert.add_argument("--format", default="wav", choices=["wav", "mp3", "ogg"], help="Output audio format.")
    convert.add_argument("--merge", action="store_true", help="Merge chunk files into one file when all succeed.")
    convert.add_argument("--session-id", help="Session identifier used for the output folder and merged file.")
    convert.add_argument("--keep-chunks", action="store_true", help="Keep chunk files after merging.")
    convert.add_argument(
        "--retry-rounds",
        type=int,
        default=0,
        help="Re-submit failed or skipped chunks this many times while a healthy key remains.",
    )
    convert.add_argument(
        "--demote-on-failure",
        action="store_true",
        help="Mark a key unhealthy after a failed chunk instead of returning it to the pool.",
    )
    convert.add_argument("--engine", default="google_genai", help="TTS engine to use (google_genai, mock).")

    status = subparsers.add_parser("status", help="Show API key status and codec availability.")
    status.add_argument("-k", "--keys", help="API keys (comma separated). Defaults to GEMINI_API_KEYS.")

    return parser.parse_args(argv)


def configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def load_input_text(args: argparse.Namespace) -> str:
    if args.text is not None:
        return args.text
    path = Path(args.file)
    if not path.exists():
        raise FileNotFoundError(f"Input file does not exist: {path}")
    return path.read_text(encoding=args.input_encoding)


def build_pool(raw_keys: Optional[str]) -> CredentialPool:
    pool = CredentialPool()
    pool.add_many(load_api_keys(raw_keys))
    stats = pool.stats()
    logger.info("Registered %d API keys (%d healthy).", stats.total, stats.healthy)
    return pool


def create_engine(args: argparse.Namespace, config: SynthesisConfig) -> TtsEngine:
    engine_name = (args.engine or "").lower()
    if engine_name in {"mock", "dummy"}:
        return MockTtsEngine(output_directory=config.output_directory)

    if engine_name in {"google", "google_genai", "gemini"}:
        return GoogleGenAITtsEngine(
            output_directory=config.output_directory,
            model=config.model,
            **config.model_parameters(),
        )

    raise ValueError(f"Unsupported engine: {args.engine}")


def run_with_retries(
    scheduler: SynthesisScheduler,
    chunks: Sequence[TextChunk],
    retry_rounds: int,
) -> List[SynthesisResult]:
    results = scheduler.run(chunks, on_progress=_log_progress)
    for attempt in range(1, retry_rounds + 1):
        pending = chunks_to_resubmit(chunks, results)
        if not pending:
            break
        if scheduler.pool.healthy_count() == 0:
            logger.warning(
                "No healthy API keys left; stopping retries with %d chunks pending.", len(pending)
            )
            break
        logger.info("Retry round %d: re-submitting %d chunks.", attempt, len(pending))
        scheduler.pool.rotate()
        by_chunk: Dict[str, SynthesisResult] = {result.chunk_id: result for result in results}
        for result in scheduler.run(pending, on_progress=_log_progress):
            by_chunk[result.chunk_id] = result
        results = sorted(by_chunk.values(), key=lambda result: result.sequence_index)
    return results


def convert(args: argparse.Namespace) -> int:
    config = SynthesisConfig(
        temperature=args.temperature,
        voice_name=args.voice,
        chunk_size_limit=args.chunk_size,
        max_parallel=args.parallel,
        model=args.model,
        output_format=args.format,
    )
    config.validate()
    if config.output_format != "wav" and not ffmpeg_available():
        raise ValueError(f"{config.output_format} output requires ffmpeg, which was not found.")

    pool = build_pool(args.keys)
    text = load_input_text(args)

    session_id = args.session_id or f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
    config.output_directory = Path(args.output) / session_id
    config.ensure_directories()

    logger.info("Input: %d characters, chunk size %d.", len(text), config.chunk_size_limit)
    chunks = chunk_text(text, config.chunk_size_limit)
    if not chunks:
        logger.warning("No text found in input. Nothing to synthesize.")
        return 0
    estimate_ms = estimate_duration_ms(len(chunks), pool.healthy_count())
    logger.info("Split text into %d chunks. Estimated time: %d seconds.", len(chunks), round(estimate_ms / 1000))

    engine = create_engine(args, config)
    scheduler = SynthesisScheduler(
        pool,
        engine.synthesize_chunk,
        max_parallel=config.max_parallel,
        failure_policy=(lambda result: True) if args.demote_on_failure else None,
    )
    results = run_with_retries(scheduler, chunks, max(0, args.retry_rounds))
    _log_summary(chunks, results, config.output_directory)

    merged_path: Optional[Path] = None
    if args.merge:
        try:
            merged_path = auto_merge(
                results,
                config.output_directory,
                session_id,
                config.output_format,
                expected_count=len(chunks),
            )
            logger.info("Merged audio saved to %s", merged_path)
        except MergeError as exc:
            logger.warning("Skipping merge: %s", exc)
    elif config.output_format != "wav":
        chunk_files = [result.output_file for result in results if result.succeeded and result.output_file]
        converted = convert_batch(chunk_files, config.output_format, config.output_directory)
        logger.info(
            "Converted %d of %d chunk files to %s.",
            sum(1 for item in converted if item.success),
            len(converted),
            config.output_format,
        )

    metadata_builder = MetadataBuilder(
        engine=engine,
        config=config,
        output_path=config.output_directory / "metadata.json",
    )
    metadata_builder.write_metadata(
        metadata_builder.build_metadata(
            session_id=session_id,
            chunk_count=len(chunks),
            results=results,
            pool_stats=pool.stats(),
            merged_output=merged_path,
        )
    )
    logger.info("Metadata written to %s", metadata_builder.output_path)

    if merged_path is not None and not args.keep_chunks:
        _cleanup_chunks(results)

    complete = len(results) == len(chunks) and all(result.succeeded for result in results)
    return 0 if complete else 1


def status(args: argparse.Namespace) -> int:
    pool = build_pool(args.keys)
    stats = pool.stats()
    logger.info(
        "Total: %d | Healthy: %d | Unhealthy: %d | In use: %d | Available: %d",
        stats.total,
        stats.healthy,
        stats.unhealthy,
        stats.in_use,
        stats.available,
    )
    for position, credential in enumerate(pool.snapshot(), start=1):
        logger.info(
            "  Key %d: %s [%s] uses=%d",
            position,
            credential.display_name,
            "healthy" if credential.healthy else "unhealthy",
            credential.total_uses,
        )
    if ffmpeg_available():
        logger.info("ffmpeg available: wav, mp3 and ogg output supported.")
    else:
        logger.warning("ffmpeg not found: only WAV output is supported.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.debug)
    if args.command == "status":
        return status(args)
    return convert(args)


def _log_progress(completed: int, total: int) -> None:
    logger.info("Processing chunks: %d/%d (%d%%)", completed, total, round(completed / total * 100))


def _log_summary(chunks: Sequence[TextChunk], results: Sequence[SynthesisResult], output_dir: Path) -> None:
    succeeded = sum(1 for result in results if result.succeeded)
    total_bytes = sum(result.byte_size for result in results)
    logger.info(
        "Processing finished: %d succeeded, %d failed, %d skipped, %d KB in %s",
        succeeded,
        len(results) - succeeded,
        len(chunks) - len(results),
        round(total_bytes / 1024),
        output_dir,
    )
    for result in results:
        if not result.succeeded:
            logger.error("  Chunk %d: %s", result.sequence_index, result.error_detail)


def _cleanup_chunks(results: Sequence[SynthesisResult]) -> None:
    for result in results:
        if result.output_file is None:
            continue
        try:
            result.output_file.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to delete chunk %s: %s", result.output_file, exc)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.error("Interrupted by user.")
        sys.exit(1)
    except Exception as exc:
        logger.exception("Fatal error: %s", exc)
        sys.exit(1)
