import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from prometheus_client.core import GaugeMetricFamily, Metric

from target_registry import TARGET_DOWN, TARGET_UP, TargetRegistry

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "prometheus_inception"
DEFAULT_TIMEOUT = 5.0
TARGETS_API_PATH = "/api/v1/targets"

_READ_CHUNK = 64 * 1024

# Upstream health -> exported state. Anything else leaves the entry as it is:
# disappeared from the mark pass, or down when just created.
HEALTH_STATES = {
    "up": TARGET_UP,
    "down": TARGET_DOWN,
    "unknown": TARGET_DOWN,
}


class FetchError(Exception):
    """Polling the upstream targets API failed."""


class RequestBuildError(FetchError):
    pass


class NetworkError(FetchError):
    pass


class DecodeError(FetchError):
    pass


@dataclass
class ActiveTarget:
    scrape_url: str
    health: str
    discovered_labels: Dict[str, str] = field(default_factory=dict)

    @property
    def job(self) -> str:
        return self.discovered_labels.get("job", "")


@dataclass
class TargetsResponse:
    status: str
    active_targets: List[ActiveTarget] = field(default_factory=list)
    error_type: str = ""
    error: str = ""


def _requests_session() -> requests.Session:
    # One attempt per poll; the scraper retries on its next interval.
    s = requests.Session()
    retries = Retry(total=0, raise_on_status=False)
    s.mount("https://", HTTPAdapter(max_retries=retries))
    s.mount("http://", HTTPAdapter(max_retries=retries))
    return s


def _str_field(obj: Dict[str, Any], key: str, where: str) -> str:
    v = obj.get(key)
    if v is None:
        return ""
    if not isinstance(v, str):
        raise DecodeError(f"{where}.{key}: expected string, got {type(v).__name__}")
    return v


def _decode_target(raw: Any, idx: int) -> ActiveTarget:
    where = f"data.activeTargets[{idx}]"
    if not isinstance(raw, dict):
        raise DecodeError(f"{where}: expected object, got {type(raw).__name__}")

    labels = raw.get("discoveredLabels")
    if labels is None:
        labels = {}
    if not isinstance(labels, dict):
        raise DecodeError(f"{where}.discoveredLabels: expected object")
    for k, v in labels.items():
        if not isinstance(v, str):
            raise DecodeError(f"{where}.discoveredLabels.{k}: expected string")

    return ActiveTarget(
        scrape_url=_str_field(raw, "scrapeUrl", where),
        health=_str_field(raw, "health", where),
        discovered_labels=dict(labels),
    )


def decode_targets_response(body: bytes) -> TargetsResponse:
    """Decode a /api/v1/targets envelope.

    Missing fields decode to empty values; present fields of the wrong type
    are a DecodeError.
    """
    try:
        doc = json.loads(body)
    except (ValueError, UnicodeDecodeError, RecursionError) as e:
        raise DecodeError(f"invalid JSON: {e}") from e

    if not isinstance(doc, dict):
        raise DecodeError(f"expected JSON object, got {type(doc).__name__}")

    data = doc.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise DecodeError("data: expected object")

    active = data.get("activeTargets")
    if active is None:
        active = []
    if not isinstance(active, list):
        raise DecodeError("data.activeTargets: expected array")

    return TargetsResponse(
        status=_str_field(doc, "status", "response"),
        active_targets=[_decode_target(t, i) for i, t in enumerate(active)],
        error_type=_str_field(doc, "errorType", "response"),
        error=_str_field(doc, "error", "response"),
    )


class InceptionExporter:
    """Re-exports the scrape health of a Prometheus server's targets.

    Implements the prometheus_client custom collector protocol. Every
    collect() polls the upstream once, holding the exporter lock for the
    whole poll so concurrent scrapes are served complete snapshots.
    """

    def __init__(
        self,
        uri: str,
        username: str = "",
        password: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        namespace: str = DEFAULT_NAMESPACE,
        registry: Optional[TargetRegistry] = None,
        session: Optional[requests.Session] = None,
        verify: bool = True,
    ):
        self.uri = uri.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = float(timeout)
        self.namespace = namespace
        self.verify = verify
        self.registry = registry if registry is not None else TargetRegistry()
        self.http = session if session is not None else _requests_session()

        self._mutex = threading.Lock()
        self._target_count = 0

    @property
    def targets_url(self) -> str:
        return self.uri + TARGETS_API_PATH

    @property
    def target_count(self) -> int:
        return self._target_count

    def _count_family(self) -> GaugeMetricFamily:
        return GaugeMetricFamily(
            f"{self.namespace}_target_count",
            "Number of targets on Prometheus instance",
            value=self._target_count,
        )

    def _state_family(self) -> GaugeMetricFamily:
        g = GaugeMetricFamily(
            f"{self.namespace}_target_state",
            "Prometheus targets state",
            labels=["job_name", "scrape_url"],
        )
        for labels, state in self.registry.iterate():
            g.add_metric([labels["job_name"], labels["scrape_url"]], state)
        return g

    def describe(self) -> List[Metric]:
        out: List[Metric] = [self._count_family()]
        if len(self.registry):
            out.append(self._state_family())
        return out

    def collect(self) -> List[Metric]:
        with self._mutex:
            try:
                self.poll()
            except FetchError as e:
                logger.error("Can't scrape Prometheus api at %s: %s", self.targets_url, e)
                self._target_count = 0
                return [self._count_family()]

            out: List[Metric] = []
            if len(self.registry):
                out.append(self._state_family())
            out.append(self._count_family())
            return out

    def poll(self) -> None:
        """Fetch, decode and classify the upstream target list.

        Raises FetchError; registry state is only touched after decoding
        succeeds. Callers must hold the exporter lock, as collect() does.
        """
        resp = decode_targets_response(self.fetch())

        if resp.status != "success":
            logger.warning(
                "Prometheus api returned status=%r errorType=%r error=%r",
                resp.status, resp.error_type, resp.error,
            )

        self._target_count = self._classify(resp.active_targets)

    def _classify(self, targets: List[ActiveTarget]) -> int:
        # Must be reset for targets no longer reported
        self.registry.mark_all_disappeared()

        count = 0
        for t in targets:
            self.registry.get_or_create(t.scrape_url, t.job)
            state = HEALTH_STATES.get(t.health)
            if state is None:
                logger.warning("Unrecognized health %r for target %s", t.health, t.scrape_url)
                continue
            self.registry.set_state(t.scrape_url, state)
            count += 1
        return count

    def fetch(self) -> bytes:
        url = self.targets_url
        auth = (self.username, self.password) if (self.username or self.password) else None

        # Deadline covers connect, headers and body together
        deadline = time.monotonic() + self.timeout
        try:
            resp = self.http.get(
                url,
                auth=auth,
                timeout=(self.timeout, self.timeout),
                verify=self.verify,
                stream=True,
            )
        except (requests.exceptions.MissingSchema,
                requests.exceptions.InvalidSchema,
                requests.exceptions.InvalidURL) as e:
            raise RequestBuildError(f"bad request for {url}: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(f"GET {url} failed: {e}") from e

        try:
            chunks = []
            for chunk in resp.iter_content(_READ_CHUNK):
                if time.monotonic() > deadline:
                    raise NetworkError(f"GET {url} exceeded timeout of {self.timeout}s")
                chunks.append(chunk)
        except requests.RequestException as e:
            raise NetworkError(f"reading {url} failed: {e}") from e
        finally:
            resp.close()

        body = b"".join(chunks)
        logger.debug("GET %s -> %s, %d bytes: %s", url, resp.status_code, len(body), body[:2048])
        return body
