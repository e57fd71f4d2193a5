"""Analysis backends that produce the payloads the orchestrator caches.

The orchestrator treats these payloads as opaque dicts. ``FileHeuristicBackend``
is a lightweight default that derives concepts and rules from source text; real
deployments plug in their own ``AnalysisBackend``.
"""

import re
import time
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import structlog

logger = structlog.get_logger()

CLASS_PATTERN = re.compile(r"\b(?:class|interface|record|struct)\s+([A-Z]\w*)")
RULE_PATTERN = re.compile(r"(?://|#|\*)\s*(.*\b(?:must|should|shall|never|always)\b.*)", re.IGNORECASE)


class AnalysisBackend(Protocol):
    async def analyze_file(self, file_path: str) -> dict[str, Any]: ...

    async def analyze_domain(self, domain: str, files: list[str]) -> dict[str, Any]: ...

    async def coordinate_domains(self, domains: list[str]) -> dict[str, Any]: ...

    async def generate_context(
        self,
        domain: str,
        analysis_results: dict[str, Any],
        domain_result: dict[str, Any] | None,
    ) -> dict[str, Any]: ...


class FileHeuristicBackend:
    """Regex-driven analysis of files on disk."""

    def __init__(self, max_rules_per_file: int = 20):
        self.max_rules_per_file = max_rules_per_file

    async def analyze_file(self, file_path: str) -> dict[str, Any]:
        content = await self._read(file_path)
        if content is None:
            return {
                "filePath": file_path,
                "concepts": [],
                "businessRules": [],
                "accuracy": 0.5,
            }

        concepts = list(dict.fromkeys(CLASS_PATTERN.findall(content)))
        rules = [match.strip() for match in RULE_PATTERN.findall(content)]

        return {
            "filePath": file_path,
            "concepts": concepts,
            "businessRules": list(dict.fromkeys(rules))[:self.max_rules_per_file],
            "accuracy": 0.9 if concepts else 0.75,
            "lineCount": content.count("\n") + 1,
        }

    async def analyze_domain(self, domain: str, files: list[str]) -> dict[str, Any]:
        return {
            "domain": domain,
            "files": list(files),
            "crossReferences": len(files) * 2,
            "impactScore": min(1.0, 0.7 + 0.05 * len(files)),
        }

    async def coordinate_domains(self, domains: list[str]) -> dict[str, Any]:
        return {
            "domains": list(domains),
            "coordinationPlan": f"plan-{int(time.time() * 1000)}",
            "estimatedDuration": 15_000 + 2_500 * max(len(domains) - 1, 0),
        }

    async def generate_context(
        self,
        domain: str,
        analysis_results: dict[str, Any],
        domain_result: dict[str, Any] | None,
    ) -> dict[str, Any]:
        domain_files = (domain_result or {}).get("files", [])

        lines = [f"# {domain} context", ""]
        lines.append("## Changed files")
        lines.extend(f"- {path}" for path in domain_files)

        concepts = sorted({
            concept
            for path in domain_files
            for concept in analysis_results.get(path, {}).get("concepts", [])
        })
        if concepts:
            lines.extend(["", "## Concepts"])
            lines.extend(f"- {concept}" for concept in concepts)

        rules = [
            rule
            for path in domain_files
            for rule in analysis_results.get(path, {}).get("businessRules", [])
        ]
        if rules:
            lines.extend(["", "## Business rules"])
            lines.extend(f"- {rule}" for rule in dict.fromkeys(rules))

        content = "\n".join(lines) + "\n"
        return {
            "domain": domain,
            "fileName": "domain-overview.md",
            "content": content,
            "linesGenerated": len(lines),
        }

    async def _read(self, file_path: str) -> str | None:
        path = Path(file_path)
        if not path.is_file():
            return None
        try:
            async with aiofiles.open(path, encoding="utf-8", errors="replace") as f:
                return await f.read()
        except OSError as e:
            logger.warning("Could not read file for analysis", file_path=file_path, error=str(e))
            return None
