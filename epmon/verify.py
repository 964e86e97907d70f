"""
Run/skip decisions and endpoint verification for a single worker process.

A ``SelectionContext`` is created once per worker. It loads the analysis
result and the endpoint map on first use, decides whether each test runs,
hands out one ``EndpointObservation`` per test and collects the
observations that disagree with the endpoint map until the worker exits.
"""
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import cached_property
from typing import Dict, List, Optional

from epmon.analyzer import AnalysisResult, read_analysis
from epmon.common import Endpoint, EndpointMap, TestId, get_logger, write_json_atomic
from epmon.endpoints import EndpointResolver, NullResolver, any_endpoint_matches
from epmon.mapping import get_worker_file_path, load_endpoint_map

logger = get_logger(__name__)

MERGE_COMMAND = "epmon merge"


def is_test_file_modified(test_file: str, modified_files) -> bool:
    return any(test_file in path or path in test_file for path in modified_files if path)


@dataclass(frozen=True)
class Decision:
    run: bool
    reason: str


@dataclass(frozen=True)
class EndpointMismatch:
    test_id: TestId
    expected: List[Endpoint]
    observed: List[Endpoint]
    unexpected: List[Endpoint]
    missing: List[Endpoint]
    endpoint_map_file: str = ""

    @property
    def message(self) -> str:
        message = ""
        if self.unexpected:
            message += f"Unexpected endpoints used: {', '.join(self.unexpected)}. "
        if self.missing:
            message += f"Expected endpoints not used: {', '.join(self.missing)}. "
        target = self.endpoint_map_file or "the endpoint map"
        message += f"Run '{MERGE_COMMAND}' to update {target} and run tests again."
        return message


def compare_endpoints(test_id, expected, observed, endpoint_map_file="") -> Optional[EndpointMismatch]:
    unexpected = [endpoint for endpoint in observed if endpoint not in expected]
    missing = [endpoint for endpoint in expected if endpoint not in observed]
    if not unexpected and not missing:
        return None
    return EndpointMismatch(
        test_id=test_id,
        expected=list(expected),
        observed=list(observed),
        unexpected=unexpected,
        missing=missing,
        endpoint_map_file=endpoint_map_file,
    )


class EndpointObservation:
    """
    Endpoints visited by one test.

    Navigation sources (a Playwright page, or the test itself through
    ``record_url``) feed it while it is open; once closed every further
    record is ignored so nothing leaks into the next test of the worker.
    """

    def __init__(self, test_id: TestId, expected, url_resolver: EndpointResolver = None):
        self.test_id = test_id
        self.expected: List[Endpoint] = list(expected)
        self.url_resolver = url_resolver or NullResolver()
        self._endpoints: List[Endpoint] = []
        self.closed = False

    @property
    def endpoints(self) -> List[Endpoint]:
        return list(self._endpoints)

    def record_endpoint(self, endpoint: Optional[Endpoint]) -> None:
        if self.closed or not endpoint:
            return
        if endpoint not in self._endpoints:
            self._endpoints.append(endpoint)

    def record_url(self, url: str) -> Optional[Endpoint]:
        if self.closed:
            return None
        try:
            endpoint = self.url_resolver(url)
        except Exception as exc:  # user-supplied get_endpoint_from_url
            logger.warning(f"Cannot map {url} to an endpoint: {exc}")
            return None
        self.record_endpoint(endpoint)
        return endpoint

    @contextmanager
    def watching(self, page=None):
        """
        Subscribe to top-level navigations of ``page`` for the duration of
        the block. The listener is removed and the observation closed on
        every exit path.
        """
        listener = None
        if page is not None:

            def listener(frame):
                if frame == page.main_frame:
                    self.record_url(frame.url)

            page.on("framenavigated", listener)
        try:
            yield self
        finally:
            if listener is not None:
                page.remove_listener("framenavigated", listener)
            self.closed = True


class WorkerObservations:
    """Observed endpoints of mismatching tests, flushed once per worker."""

    def __init__(self):
        self.mapping: EndpointMap = {}
        self.flushed = False

    def __len__(self):
        return len(self.mapping)

    def stage(self, test_id: TestId, endpoints) -> None:
        self.mapping[test_id] = list(endpoints)

    def flush(self, temp_dir, worker_id: str) -> Optional[str]:
        if self.flushed or not self.mapping:
            return None
        path = get_worker_file_path(worker_id, temp_dir)
        write_json_atomic(path, self.mapping)
        self.flushed = True
        return path


@dataclass
class SelectionContext:  # pylint: disable=too-many-instance-attributes
    analysis_path: str
    endpoint_map_path: str
    temp_dir: str
    worker_id: str = "main"
    url_resolver: EndpointResolver = field(default_factory=NullResolver)
    endpoint_map_file: str = ""
    observations: WorkerObservations = field(default_factory=WorkerObservations)

    @cached_property
    def analysis(self) -> AnalysisResult:
        result = read_analysis(self.analysis_path)
        if result is None:
            logger.warning(
                f"No analysis file at {self.analysis_path}, running all tests "
                "(run 'epmon analyze' first)"
            )
            return AnalysisResult.run_all()
        return result

    @cached_property
    def endpoint_map(self) -> EndpointMap:
        return load_endpoint_map(self.endpoint_map_path)

    def expected_endpoints(self, test_id: TestId) -> List[Endpoint]:
        return list(self.endpoint_map.get(test_id) or [])

    def decide(self, test_id: TestId, test_file: str) -> Decision:
        analysis = self.analysis
        if analysis.run_all_tests:
            return Decision(True, "all tests selected")
        if is_test_file_modified(test_file, analysis.modified_test_files):
            return Decision(True, "test file modified")
        expected = self.expected_endpoints(test_id)
        if not expected:
            return Decision(True, "no expected endpoints recorded")
        if any_endpoint_matches(expected, analysis.modified_endpoints):
            return Decision(True, "expected endpoints modified")
        return Decision(
            False,
            f"no modified endpoints (expected: {', '.join(expected)}; "
            f"modified: {', '.join(analysis.modified_endpoints)})",
        )

    def observe(self, test_id: TestId) -> EndpointObservation:
        return EndpointObservation(
            test_id, self.expected_endpoints(test_id), self.url_resolver
        )

    def reconcile(self, observation: EndpointObservation) -> Optional[EndpointMismatch]:
        mismatch = compare_endpoints(
            observation.test_id,
            observation.expected,
            observation.endpoints,
            self.endpoint_map_file,
        )
        if mismatch:
            self.observations.stage(observation.test_id, observation.endpoints)
        return mismatch

    def flush(self) -> Optional[str]:
        return self.observations.flush(self.temp_dir, f"{self.worker_id}-{os.getpid()}")
