"""
Loading and validation of the epmon configuration module.

The configuration is a plain Python file (``epmon_config.py`` by default)
whose module-level names are the settings. User values are laid over
``DEFAULTS``; the manifest and lockfile names in
``ALWAYS_FORCE_ALL_TESTS_FILES`` are always added to the force list.
"""
import importlib.util
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from epmon.common import ConfigError, MissingRequiredField, get_logger
from epmon.endpoints import (
    CallbackResolver,
    EndpointResolver,
    NullResolver,
    PathRegexResolver,
    UrlRegexResolver,
)

logger = get_logger(__name__)

CONFIG_FILENAME = "epmon_config.py"
DEFAULT_TEMP_DIR = ".epmon-temp"
DEFAULT_ANALYSIS_FILE = f"{DEFAULT_TEMP_DIR}/analysis.json"
DEFAULT_ENDPOINT_MAP_FILE = "tests/test-endpoints.json"

# dependency changes can't be followed through source-level reachability
ALWAYS_FORCE_ALL_TESTS_FILES = (
    "package.json",
    "package-lock.json",
    "npm-shrinkwrap.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "pyproject.toml",
    "setup.py",
    "setup.cfg",
    "requirements.txt",
    "poetry.lock",
    "Pipfile.lock",
    "uv.lock",
)

DEFAULTS = {
    "vcs": "git",
    "base_branch": "main",
    "force_all_tests_files": [],
    "exclude": [],
    "include_only": None,
    "endpoint_regex": None,
    "get_endpoint_from_file": None,
    "test_files_regex": None,
    "test_endpoint_map_file": DEFAULT_ENDPOINT_MAP_FILE,
    "temp_dir": DEFAULT_TEMP_DIR,
    "analysis_file": DEFAULT_ANALYSIS_FILE,
    "project_root": None,
    "workspace_patterns": None,
    "get_endpoint_from_url": None,
    "endpoint_url_regex": None,
    "graph_engine": "imports",
}


def _compile(name, pattern):
    try:
        return re.compile(pattern)
    except (re.error, TypeError) as exc:
        raise ConfigError(f"{name} is not a valid regular expression: {exc}") from exc


@dataclass
class EpmonConfig:  # pylint: disable=too-many-instance-attributes
    vcs: str = "git"
    base_branch: str = "main"
    force_all_tests_files: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    include_only: Optional[str] = None
    endpoint_regex: Optional[str] = None
    get_endpoint_from_file: Optional[Callable[[str], Optional[str]]] = None
    test_files_regex: Optional[str] = None
    test_endpoint_map_file: str = DEFAULT_ENDPOINT_MAP_FILE
    temp_dir: str = DEFAULT_TEMP_DIR
    analysis_file: str = DEFAULT_ANALYSIS_FILE
    project_root: Optional[str] = None
    workspace_patterns: Optional[List[str]] = None
    get_endpoint_from_url: Optional[Callable[[str], Optional[str]]] = None
    endpoint_url_regex: Optional[str] = None
    graph_engine: Any = "imports"
    base_dir: str = field(default_factory=os.getcwd)

    file_resolver: EndpointResolver = field(init=False, repr=False)
    url_resolver: EndpointResolver = field(init=False, repr=False)
    test_files_pattern: Optional["re.Pattern"] = field(init=False, repr=False)

    def __post_init__(self):
        for name in ("get_endpoint_from_file", "get_endpoint_from_url"):
            value = getattr(self, name)
            if value is not None and not callable(value):
                raise ConfigError(f"{name} must be a function")

        if self.get_endpoint_from_file:
            self.file_resolver = CallbackResolver(self.get_endpoint_from_file)
        elif self.endpoint_regex:
            self.file_resolver = PathRegexResolver(
                _compile("endpoint_regex", self.endpoint_regex)
            )
        else:
            self.file_resolver = NullResolver()

        if self.get_endpoint_from_url:
            self.url_resolver = CallbackResolver(self.get_endpoint_from_url)
        elif self.endpoint_url_regex:
            self.url_resolver = UrlRegexResolver(
                _compile("endpoint_url_regex", self.endpoint_url_regex)
            )
        else:
            self.url_resolver = NullResolver()

        self.test_files_pattern = (
            _compile("test_files_regex", self.test_files_regex)
            if self.test_files_regex
            else None
        )
        if self.include_only:
            _compile("include_only", self.include_only)
        for pattern in self.exclude:
            _compile("exclude", pattern)

    def validate_rules(self):
        if not (self.endpoint_regex or self.get_endpoint_from_file):
            raise MissingRequiredField("endpoint_regex")
        if not self.test_files_regex:
            raise MissingRequiredField("test_files_regex")

    def resolve_path(self, path):
        return os.path.join(self.base_dir, path)

    @property
    def analysis_path(self):
        return self.resolve_path(self.analysis_file)

    @property
    def endpoint_map_path(self):
        return self.resolve_path(self.test_endpoint_map_file)

    @property
    def temp_path(self):
        return self.resolve_path(self.temp_dir)


def get_config_path(config_path=None, base_dir=None):
    config_path = config_path or os.environ.get("EPMON_CONFIG") or CONFIG_FILENAME
    return os.path.join(base_dir or os.getcwd(), config_path)


def import_config_module(path):
    spec = importlib.util.spec_from_file_location("epmon_user_config", path)
    if spec is None or spec.loader is None:
        raise ConfigError(f"Cannot load configuration file: {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:  # user code, anything can go wrong
        raise ConfigError(f"Cannot load configuration file {path}: {exc}") from exc
    return module


def load_config(
    config_path=None, base_dir=None, require_rules=True, missing_ok=False
) -> EpmonConfig:
    """
    Load the configuration module and merge it over the defaults.

    Args:
        config_path: Path of the configuration file, relative to ``base_dir``.
            Defaults to ``$EPMON_CONFIG`` or ``epmon_config.py``.
        base_dir: Directory relative paths are resolved against (cwd).
        require_rules: Fail with ``MissingRequiredField`` when the endpoint or
            test-file classification rule is absent.
        missing_ok: Return the defaults when the file doesn't exist.

    Raises:
        ConfigError: file missing, not importable, or invalid values.
    """
    base_dir = base_dir or os.getcwd()
    path = get_config_path(config_path, base_dir)

    values = dict(DEFAULTS)
    if os.path.exists(path):
        module = import_config_module(path)
        for name in DEFAULTS:
            if hasattr(module, name):
                values[name] = getattr(module, name)
    elif not missing_ok:
        raise ConfigError(f"Configuration file not found: {path}")
    else:
        logger.debug(f"No configuration file at {path}, using defaults")

    if os.environ.get("EPMON_BASE_BRANCH"):
        values["base_branch"] = os.environ["EPMON_BASE_BRANCH"]

    for name in ("force_all_tests_files", "exclude"):
        if isinstance(values[name], str):
            values[name] = [values[name]]
        values[name] = list(values[name] or [])
    values["force_all_tests_files"] = list(ALWAYS_FORCE_ALL_TESTS_FILES) + [
        name
        for name in values["force_all_tests_files"]
        if name not in ALWAYS_FORCE_ALL_TESTS_FILES
    ]
    if isinstance(values["workspace_patterns"], str):
        values["workspace_patterns"] = [values["workspace_patterns"]]

    config = EpmonConfig(base_dir=base_dir, **values)
    if require_rules:
        config.validate_rules()
    return config


def create_file_pattern(files) -> str:
    """Build an "any of these files" regex: anchored prefixes joined with ``|``."""
    return "|".join(f"^{re.escape(file)}" for file in files)


CONFIG_TEMPLATE = '''"""
epmon configuration.

Every name below is optional except one endpoint rule
(endpoint_regex or get_endpoint_from_file) and test_files_regex.
"""

# Version control command (only git is supported for untracked files)
vcs = "git"

# Branch to diff against; $EPMON_BASE_BRANCH overrides it
base_branch = "main"

# Additional files that force all tests to run. Manifests and lockfiles
# (package.json, pyproject.toml, requirements.txt, *.lock, ...) are always included.
force_all_tests_files = [
    "playwright.config.ts",
    "pytest.ini",
    "conftest.py",
    ".github/workflows/*.yml",
]

# Regexes of paths excluded from dependency analysis
exclude = [
    "node_modules",
    "dist",
    "build",
]

# Regex restricting dependency analysis to some files (optional)
# include_only = r"^(src|tests)/.*\\.(py|js|jsx|ts|tsx)$"

# Regex identifying endpoint modules (REQUIRED unless get_endpoint_from_file is set)
endpoint_regex = r"^src/pages/.*\\.(py|jsx?|tsx?)$"

# Alternative to endpoint_regex: map a file path to an endpoint name or None
# def get_endpoint_from_file(path):
#     return path.split("/")[0] if path.startswith("app") else None

# Regex identifying end-to-end test files (REQUIRED)
test_files_regex = r"^tests/.*test_.*\\.py$"

# Map a visited URL to an endpoint name or None (used while tests run)
# def get_endpoint_from_url(url):
#     ...

# Expected endpoints per test, written by "epmon merge"
test_endpoint_map_file = "tests/test-endpoints.json"

# Directory for worker files and the analysis result
temp_dir = ".epmon-temp"
analysis_file = ".epmon-temp/analysis.json"

# Path of this project inside the repository, for monorepos
# project_root = "packages/web"

# Sibling workspace packages whose changes force all tests to run
# workspace_patterns = ["packages/*"]

# "imports" (built-in scanner) or "dependency-cruiser"
graph_engine = "imports"
'''


def init_config(config_path=None, base_dir=None) -> str:
    """Write the configuration template. Never overwrites an existing file."""
    path = get_config_path(config_path, base_dir)
    if os.path.exists(path):
        raise ConfigError(f"Configuration file already exists: {path}")
    with open(path, "x", encoding="utf8") as config_file:
        config_file.write(CONFIG_TEMPLATE)
    return path
