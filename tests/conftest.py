"""Pytest configuration and shared fixtures for context gateway tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import structlog

from context_gateway.events import EventBus
from context_gateway.storage import RollbackManager


class FakeClock:
    """Monotonic seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Timezone-aware datetime clock for rollback ages."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self, bus: EventBus):
        self.events: list[tuple[str, dict[str, Any]]] = []
        bus.subscribe("*", self)

    def __call__(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


class FakeBackend:
    """Deterministic analysis backend that counts its calls."""

    def __init__(self):
        self.file_calls: list[str] = []
        self.domain_calls: list[str] = []
        self.fail_generation_for: set[str] = set()

    async def analyze_file(self, file_path: str) -> dict[str, Any]:
        self.file_calls.append(file_path)
        name = Path(file_path).stem
        return {
            "filePath": file_path,
            "concepts": [name.title(), "Shared"],
            "businessRules": [f"{name} must be valid"],
            "accuracy": 0.8,
        }

    async def analyze_domain(self, domain: str, files: list[str]) -> dict[str, Any]:
        self.domain_calls.append(domain)
        return {"domain": domain, "files": list(files), "crossReferences": len(files) * 2, "impactScore": 0.8}

    async def coordinate_domains(self, domains: list[str]) -> dict[str, Any]:
        return {"domains": list(domains), "coordinationPlan": "plan-test", "estimatedDuration": 15_000}

    async def generate_context(self, domain, analysis_results, domain_result) -> dict[str, Any]:
        if domain in self.fail_generation_for:
            raise RuntimeError(f"generation exploded for {domain}")
        files = (domain_result or {}).get("files", [])
        return {
            "domain": domain,
            "fileName": "domain-overview.md",
            "content": f"# {domain}\n" + "".join(f"- {path}\n" for path in files),
        }


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration applied by config and CLI tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def date_clock() -> FakeDateClock:
    return FakeDateClock()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus) -> EventRecorder:
    return EventRecorder(event_bus)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def repo(tmp_path) -> Path:
    """Repository root with one ``Analysis`` domain context directory."""
    root = tmp_path / "repo"
    context = root / "Analysis" / ".context"
    context.mkdir(parents=True)
    (context / "a.md").write_text("A")
    (context / "b.md").write_bytes(b"B\r\n")
    (root / "Analysis" / "src").mkdir()
    (root / "Analysis" / "src" / "fractal.py").write_text("class Fractal:\n    pass\n")
    return root


@pytest.fixture
def rollback_manager(tmp_path, date_clock) -> RollbackManager:
    return RollbackManager(tmp_path / "rollback", clock=date_clock)


def _read_tree(root: Path) -> dict[str, str]:
    if not root.exists():
        return {}
    return {
        str(path.relative_to(root)): path.read_bytes().decode("utf-8")
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def read_tree():
    """Relative path -> exact content (line endings kept) for every file under a directory."""
    return _read_tree

