from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Iterable, List, Optional

import pytest

# Ensure repo root is on sys.path so the top-level modules import under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from inception_exporter import InceptionExporter  # noqa: E402
from target_registry import TargetRegistry  # noqa: E402

UPSTREAM = "http://prometheus:9090"


def target(scrape_url: str, job: str = "node", health: str = "up") -> dict:
    return {
        "discoveredLabels": {"job": job, "__address__": scrape_url.split("/")[2]},
        "labels": {"job": job},
        "scrapeUrl": scrape_url,
        "health": health,
        "lastError": "",
    }


def targets_body(*targets: dict, status: str = "success", **extra: Any) -> bytes:
    doc = {"status": status, "data": {"activeTargets": list(targets), "droppedTargets": []}}
    doc.update(extra)
    return json.dumps(doc).encode("utf-8")


class FakeResponse:
    def __init__(self, body: bytes, status_code: int = 200, chunks: Optional[Iterable[bytes]] = None,
                 error: Optional[Exception] = None):
        self.body = body
        self.status_code = status_code
        self._chunks = chunks
        self._error = error
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        if self._chunks is not None:
            yield from self._chunks
        else:
            for i in range(0, len(self.body), chunk_size):
                yield self.body[i:i + chunk_size]
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Stands in for requests.Session; replays queued responses or errors."""

    def __init__(self) -> None:
        self.queue: List[Any] = []
        self.calls: List[tuple] = []

    def push(self, item: Any) -> None:
        if isinstance(item, bytes):
            item = FakeResponse(item)
        self.queue.append(item)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((url, kwargs))
        if not self.queue:
            raise AssertionError(f"unexpected GET {url}")
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def target_registry() -> TargetRegistry:
    return TargetRegistry()


@pytest.fixture
def exporter(session: FakeSession, target_registry: TargetRegistry) -> InceptionExporter:
    return InceptionExporter(uri=UPSTREAM, timeout=5, registry=target_registry, session=session)


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
