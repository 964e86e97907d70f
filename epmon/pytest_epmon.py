# -*- coding: utf-8 -*-
"""
Main module of epmon pytest plugin.
"""
import pytest

from _pytest.config import Config

from epmon.common import EpmonException, get_logger
from epmon.configure import EpmonConfig, load_config
from epmon.endpoints import NullResolver
from epmon.verify import EndpointObservation, SelectionContext

logger = get_logger(__name__)

OBSERVATION_KEY = pytest.StashKey[EndpointObservation]()
MISMATCH_PROPERTY = "endpoint-mismatch"


def pytest_addoption(parser):
    group = parser.getgroup(
        "select end-to-end tests by affected endpoints (pytest-epmon)"
    )

    group.addoption(
        "--epmon",
        action="store_true",
        dest="epmon",
        help=(
            "Skip tests whose expected endpoints were not affected by changes "
            "(based on 'epmon analyze' output) and verify the endpoints each "
            "executed test visits."
        ),
    )

    group.addoption(
        "--no-epmon",
        action="store_true",
        dest="no_epmon",
        help="Turn off (even if activated from the ini file).",
    )

    group.addoption(
        "--epmon-config",
        action="store",
        dest="epmon_config",
        default=None,
        help="Configuration module (default: epmon_config.py in rootdir).",
    )

    group.addoption(
        "--epmon-analysis-file",
        action="store",
        dest="epmon_analysis_file",
        default=None,
        help="Analysis result written by 'epmon analyze'.",
    )

    group.addoption(
        "--epmon-endpoint-map",
        action="store",
        dest="epmon_endpoint_map",
        default=None,
        help="JSON file mapping test ids to expected endpoints.",
    )

    group.addoption(
        "--epmon-temp-dir",
        action="store",
        dest="epmon_temp_dir",
        default=None,
        help="Directory for worker observation files.",
    )

    parser.addini("epmon", "activate epmon", type="bool", default=False)
    parser.addini("epmon_config", "epmon configuration module", default="")


def get_running_as(config):
    if hasattr(config, "workerinput"):
        return "worker"

    if getattr(config.option, "dist", "no") == "no":
        return "single"

    return "controller"


def get_worker_id(config) -> str:
    if hasattr(config, "workerinput"):
        return config.workerinput["workerid"]
    return "main"


def is_enabled(config: Config) -> bool:
    if config.getoption("no_epmon"):
        return False
    return bool(config.getoption("epmon") or config.getini("epmon"))


def get_test_id(item) -> str:
    return item.nodeid


def home_file(test_id):
    return test_id.split("::", 1)[0]


def load_epmon_config(config: Config) -> EpmonConfig:
    config_path = config.getoption("epmon_config") or config.getini("epmon_config")
    epmon_config = load_config(
        config_path or None,
        base_dir=str(config.rootpath),
        require_rules=False,
        missing_ok=not config_path,
    )
    overrides = {
        "analysis_file": config.getoption("epmon_analysis_file"),
        "test_endpoint_map_file": config.getoption("epmon_endpoint_map"),
        "temp_dir": config.getoption("epmon_temp_dir"),
    }
    for name, value in overrides.items():
        if value:
            setattr(epmon_config, name, value)
    return epmon_config


def create_context(config: Config, epmon_config: EpmonConfig) -> SelectionContext:
    return SelectionContext(
        analysis_path=epmon_config.analysis_path,
        endpoint_map_path=epmon_config.endpoint_map_path,
        temp_dir=epmon_config.temp_path,
        worker_id=get_worker_id(config),
        url_resolver=epmon_config.url_resolver,
        endpoint_map_file=epmon_config.test_endpoint_map_file,
    )


def pytest_configure(config):
    config.epmon_context = None
    if not is_enabled(config):
        return
    try:
        epmon_config = load_epmon_config(config)
    except EpmonException as error:
        pytest.exit(str(error), returncode=pytest.ExitCode.USAGE_ERROR)

    config.epmon_context = create_context(config, epmon_config)
    config.pluginmanager.register(
        EpmonVerify(config, config.epmon_context, running_as=get_running_as(config)),
        "EpmonVerify",
    )


@pytest.fixture(scope="session")
def epmon_context(request):
    """The worker's ``SelectionContext``, or None when epmon is off."""
    return request.config.epmon_context


@pytest.fixture(autouse=True)
def epmon_endpoints(request, epmon_context):
    """
    Decide whether the test runs and observe the endpoints it visits.

    Navigations of the Playwright ``page`` fixture are recorded when the test
    uses it; other tests can report what they visit through the yielded
    observation (``epmon_endpoints.record_url(url)``).
    """
    item = request.node
    test_id = get_test_id(item)
    if epmon_context is None:
        with EndpointObservation(test_id, [], NullResolver()).watching() as observation:
            yield observation
        return

    try:
        decision = epmon_context.decide(test_id, home_file(test_id))
        observation = epmon_context.observe(test_id)
    except EpmonException as error:
        pytest.exit(str(error), returncode=pytest.ExitCode.INTERNAL_ERROR)

    if not decision.run:
        pytest.skip(f"Test skipped: {decision.reason}")

    item.stash[OBSERVATION_KEY] = observation
    page = request.getfixturevalue("page") if "page" in request.fixturenames else None
    with observation.watching(page):
        yield observation


def mismatch_messages(reports):
    for report in reports:
        for name, value in getattr(report, "user_properties", ()):
            if name == MISMATCH_PROPERTY:
                yield report.nodeid, value


class EpmonVerify:
    def __init__(self, config, context: SelectionContext, running_as="single"):
        self.config = config
        self.context: SelectionContext = context
        self._running_as = running_as

    @pytest.hookimpl(hookwrapper=True)
    def pytest_runtest_makereport(self, item, call):
        result = yield

        if call.when != "call":
            return
        observation = item.stash.get(OBSERVATION_KEY, None)
        if observation is None:
            return

        report = result.get_result()
        # only a test body that completed counts as verified
        if not report.passed or hasattr(report, "wasxfail"):
            return

        mismatch = self.context.reconcile(observation)
        if mismatch:
            report.outcome = "failed"
            report.longrepr = f"Endpoint mismatch for {mismatch.test_id}: {mismatch.message}"
            report.user_properties.append((MISMATCH_PROPERTY, mismatch.message))
            result.force_result(report)

    def pytest_sessionfinish(self, session):  # pylint: disable=unused-argument
        if self._running_as == "controller":
            return
        count = len(self.context.observations)
        try:
            path = self.context.flush()
        except OSError as error:
            logger.warning(f"Error writing worker file for {self.context.worker_id}: {error}")
            return
        if path:
            logger.info(
                f"Worker {self.context.worker_id} saved endpoint data for {count} tests. "
                f"Make sure to run 'epmon merge' to update the endpoint map."
            )

    def pytest_report_header(self, config):  # pylint: disable=unused-argument
        if self._running_as == "worker":
            return None
        try:
            analysis = self.context.analysis
        except EpmonException as error:
            pytest.exit(str(error), returncode=pytest.ExitCode.INTERNAL_ERROR)
        if analysis.run_all_tests:
            return "epmon: running all tests"
        endpoints = ", ".join(analysis.modified_endpoints) or "none"
        if len(endpoints) > 100:
            endpoints = str(len(analysis.modified_endpoints))
        return (
            f"epmon: modified endpoints: {endpoints}, "
            f"modified test files: {len(analysis.modified_test_files)}"
        )

    @pytest.hookimpl(trylast=True)
    def pytest_terminal_summary(self, terminalreporter):
        if self._running_as == "worker":
            return
        mismatches = list(mismatch_messages(terminalreporter.stats.get("failed", [])))
        if not mismatches:
            return
        terminalreporter.section("epmon endpoint mismatches", "=", yellow=True)
        for nodeid, message in mismatches:
            terminalreporter.write_line(f"{nodeid}: {message}")
        terminalreporter.write_line(
            f"{len(mismatches)} tests visited other endpoints than expected. "
            f"Run 'epmon merge' to update {self.context.endpoint_map_file}."
        )
