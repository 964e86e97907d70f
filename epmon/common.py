import json
import logging
import os
import tempfile

from typing import Dict, List, Optional, TypedDict


TestId = str
Endpoint = str

EndpointMap = Dict[TestId, List[Endpoint]]


class AnalysisArtifact(TypedDict):
    runAllTests: bool
    modifiedEndpoints: List[Endpoint]
    modifiedTestFiles: List[str]
    timestamp: str


def get_logger(name):
    formatter = logging.Formatter("%(levelname)s: %(message)s")
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    ep_logger = logging.getLogger(name)
    ep_logger.setLevel(logging.INFO)
    if not ep_logger.handlers:
        ep_logger.addHandler(handler)
    return ep_logger


logger = get_logger(__name__)


class EpmonException(Exception):
    pass


class ConfigError(EpmonException):
    pass


class MissingRequiredField(ConfigError):
    def __init__(self, field_name):
        super().__init__(f"{field_name} is required in configuration")
        self.field_name = field_name


class VcsQueryFailure(EpmonException):
    pass


class GraphAnalysisFailure(EpmonException):
    pass


class MappingStoreCorrupt(EpmonException):
    pass


class WorkerFileCorrupt(EpmonException):
    pass


class AnalysisFileCorrupt(EpmonException):
    pass


def read_json_file(path, default=None):
    """
    Read and parse a JSON document.

    A missing file yields ``default`` (an empty dict unless given).
    Unparseable content raises ``json.JSONDecodeError`` to the caller,
    which knows whether that is fatal.
    """
    try:
        with open(path, "r", encoding="utf8") as json_file:
            return json.load(json_file)
    except FileNotFoundError:
        return {} if default is None else default


def write_json_atomic(path, data) -> None:
    """
    Replace ``path`` with ``data`` serialized as JSON.

    The document is written to a sibling temp file first and moved over the
    target with ``os.replace`` so readers never see a half-written file.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        prefix=".epmon-", suffix=".json.tmp", dir=directory
    )
    try:
        with os.fdopen(fd, "w", encoding="utf8") as tmp_file:
            json.dump(data, tmp_file, indent=2)
            tmp_file.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def is_endpoint_map(data) -> bool:
    """Check the shape ``{str: [str, ...]}`` shared by the store and worker files."""
    if not isinstance(data, dict):
        return False
    for key, value in data.items():
        if not isinstance(key, str) or not isinstance(value, list):
            return False
        if not all(isinstance(item, str) for item in value):
            return False
    return True


def unique(items) -> List[str]:
    """Drop duplicates and falsy entries, keeping first-seen order."""
    seen = set()
    result = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result


def relative_to_root(path: str, root: Optional[str]) -> Optional[str]:
    """
    Rewrite a repository-relative ``path`` relative to ``root``.

    Returns None for paths outside of ``root``. An empty root keeps the path.
    """
    path = path.replace("\\", "/")
    if not root:
        return path
    root = root.replace("\\", "/").strip("/")
    if root in ("", "."):
        return path
    prefix = root + "/"
    if path.startswith(prefix):
        return path[len(prefix):]
    return None
