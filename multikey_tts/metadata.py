from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .config import SynthesisConfig
from .credentials import PoolStats
from .scheduler import SynthesisResult
from .tts_engine import TtsEngine

__all__ = ["MetadataBuilder"]


@dataclass
class MetadataBuilder:
    engine: TtsEngine
    config: SynthesisConfig
    output_path: Path

    def build_metadata(
        self,
        *,
        session_id: str,
        chunk_count: int,
        results: Sequence[SynthesisResult],
        pool_stats: PoolStats,
        merged_output: Optional[Path] = None,
    ) -> Dict[str, object]:
        succeeded = [result for result in results if result.succeeded]
        failed = [result for result in results if not result.succeeded]
        uses_by_credential: Dict[str, Dict[str, Any]] = {}
        for result in succeeded:
            entry = uses_by_credential.setdefault(
                result.credential_used, {"display_name": result.credential_name, "uses": 0}
            )
            entry["uses"] += 1

        return {
            "created_at": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "engine": self.engine.descriptor(),
            "config": {
                "temperature": self.config.temperature,
                "voice_name": self.config.voice_name,
                "chunk_size_limit": self.config.chunk_size_limit,
                "max_parallel": self.config.max_parallel,
                "output_format": self.config.output_format,
            },
            "credentials": asdict(pool_stats),
            "chunks": [
                {
                    "index": result.sequence_index,
                    "file": result.output_file.name if result.output_file else None,
                    "bytes": result.byte_size,
                    "succeeded": result.succeeded,
                    "credential": result.credential_name,
                    "error": result.error_detail,
                }
                for result in results
            ],
            "totals": {
                "chunks": chunk_count,
                "succeeded": len(succeeded),
                "failed": len(failed),
                "skipped": chunk_count - len(results),
                "bytes": sum(result.byte_size for result in results),
                "uses_by_credential": uses_by_credential,
            },
            "merged_output": str(merged_output) if merged_output else None,
        }

    def write_metadata(self, metadata: Dict[str, object]) -> None:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        with self.output_path.open("w", encoding="utf-8") as f:
            json.dump(metadata, f, ensure_ascii=False, indent=2)
