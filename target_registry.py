import threading
from typing import Dict, List, Tuple

TARGET_DOWN = 0
TARGET_UP = 1
TARGET_DISAPPEARED = 2

TARGET_STATES = (TARGET_DOWN, TARGET_UP, TARGET_DISAPPEARED)


class TargetEntry:
    """One discovered scrape target. Labels are fixed once created."""

    __slots__ = ("_job_name", "_scrape_url", "state")

    def __init__(self, scrape_url: str, job_name: str, state: int = TARGET_DOWN):
        self._scrape_url = scrape_url
        self._job_name = job_name
        self.state = state

    @property
    def scrape_url(self) -> str:
        return self._scrape_url

    @property
    def job_name(self) -> str:
        return self._job_name

    @property
    def labels(self) -> Dict[str, str]:
        return {"job_name": self._job_name, "scrape_url": self._scrape_url}

    def __repr__(self) -> str:
        return f"TargetEntry(scrape_url={self._scrape_url!r}, job_name={self._job_name!r}, state={self.state})"


class TargetRegistry:
    """Per-target state keyed by scrape URL.

    Entries are created on first sight and never removed; a target that drops
    out of upstream discovery is kept with state TARGET_DISAPPEARED.
    """

    def __init__(self):
        self._entries: Dict[str, TargetEntry] = {}
        self._lock = threading.Lock()

    def get_or_create(self, scrape_url: str, job_name: str) -> TargetEntry:
        with self._lock:
            entry = self._entries.get(scrape_url)
            if entry is None:
                entry = TargetEntry(scrape_url, job_name)
                self._entries[scrape_url] = entry
            return entry

    def mark_all_disappeared(self) -> None:
        with self._lock:
            for entry in self._entries.values():
                entry.state = TARGET_DISAPPEARED

    def set_state(self, scrape_url: str, state: int) -> None:
        if state not in TARGET_STATES:
            raise ValueError(f"invalid target state: {state!r}")
        with self._lock:
            entry = self._entries.get(scrape_url)
            if entry is None:
                raise KeyError(scrape_url)
            entry.state = state

    def iterate(self) -> List[Tuple[Dict[str, str], int]]:
        # Snapshot copy; callers never see later mutations
        with self._lock:
            return [(e.labels, e.state) for e in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, scrape_url: object) -> bool:
        with self._lock:
            return scrape_url in self._entries
