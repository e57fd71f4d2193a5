"""Size reduction for analysis payloads and process memory tracking."""

import base64
import gc
import json
import zlib
from dataclasses import asdict, dataclass
from typing import Any

import psutil
import structlog

from .models import MemoryOptimizationConfig

logger = structlog.get_logger()

DROPPED_FIELDS = ("debug", "intermediate", "rawTokens")
COMPRESSION_THRESHOLD = 1000  # characters


@dataclass
class MemoryOptimizerMetrics:
    current_usage: int = 0  # bytes RSS
    peak_usage: int = 0
    gc_triggered: int = 0
    optimizations: int = 0


def compress_text(text: str) -> str:
    return base64.b64encode(zlib.compress(text.encode("utf-8"))).decode("ascii")


def decompress_text(data: str) -> str:
    return zlib.decompress(base64.b64decode(data)).decode("utf-8")


class MemoryOptimizer:
    """Strips bulky fields from analysis results and watches process RSS."""

    def __init__(self, config: MemoryOptimizationConfig | None = None):
        self.config = config or MemoryOptimizationConfig()
        self._process = psutil.Process()
        self._metrics = MemoryOptimizerMetrics()

    def optimize_semantic_data(self, analysis_data: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return reduced copies; the input dicts are left untouched."""
        optimized = []
        for data in analysis_data:
            item = {key: value for key, value in data.items() if key not in DROPPED_FIELDS}

            source = item.get("sourceCode")
            if isinstance(source, str) and len(source) > COMPRESSION_THRESHOLD:
                item["sourceCode"] = compress_text(source)
                item["_compressed"] = True

            if isinstance(item.get("concepts"), list):
                item["concepts"] = list(dict.fromkeys(item["concepts"]))

            optimized.append(item)

        self._metrics.optimizations += 1
        return optimized

    def optimize_holistic_result(self, result: dict[str, Any]) -> int:
        """Estimated size after optimization of a holistic update result."""
        analysis = result.get("analysisResults")
        if isinstance(analysis, dict):
            paths = list(analysis)
            reduced = self.optimize_semantic_data([analysis[path] for path in paths])
            result["analysisResults"] = dict(zip(paths, reduced))

        return self.estimate_size(result)

    @staticmethod
    def estimate_size(obj: Any) -> int:
        """Rough footprint: two bytes per character of the JSON encoding."""
        try:
            return len(json.dumps(obj, default=str)) * 2
        except (TypeError, ValueError):
            return len(repr(obj)) * 2

    def current_usage(self) -> int:
        return self._process.memory_info().rss

    def maybe_collect(self) -> bool:
        """Run ``gc.collect()`` when RSS is above the configured threshold."""
        usage = self._update_usage()
        if usage <= self.config.gc_threshold * self.config.max_memory_usage:
            return False

        collected = gc.collect()
        self._metrics.gc_triggered += 1
        logger.info("Garbage collection triggered",
                   rss_mb=round(usage / (1024 * 1024), 2),
                   collected=collected)
        return True

    def get_metrics(self) -> MemoryOptimizerMetrics:
        self._update_usage()
        return MemoryOptimizerMetrics(**asdict(self._metrics))

    def _update_usage(self) -> int:
        usage = self.current_usage()
        self._metrics.current_usage = usage
        self._metrics.peak_usage = max(self._metrics.peak_usage, usage)
        return usage
