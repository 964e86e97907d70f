"""
Change impact analysis.

Turns the version-control change set into the list of endpoints and test
files affected by it, or into "run all tests" when the change cannot be
reasoned about through imports.
"""
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import cached_property
from typing import Iterable, List, Optional, Tuple

from epmon.common import (
    AnalysisArtifact,
    AnalysisFileCorrupt,
    GraphAnalysisFailure,
    get_logger,
    read_json_file,
    relative_to_root,
    unique,
    write_json_atomic,
)
from epmon.configure import EpmonConfig, create_file_pattern
from epmon.graph import get_engine
from epmon.vcs import VcsGateway
from epmon.workspace import changed_dependency_packages, dependency_directories

logger = get_logger(__name__)


@dataclass(frozen=True)
class AnalysisResult:
    run_all_tests: bool = False
    modified_endpoints: Tuple[str, ...] = ()
    modified_test_files: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.run_all_tests and (self.modified_endpoints or self.modified_test_files):
            raise ValueError("a run-all-tests result carries no endpoints or test files")

    @classmethod
    def run_all(cls):
        return cls(run_all_tests=True)

    def to_artifact(self, timestamp: Optional[datetime] = None) -> AnalysisArtifact:
        timestamp = timestamp or datetime.now(timezone.utc)
        return {
            "runAllTests": self.run_all_tests,
            "modifiedEndpoints": list(self.modified_endpoints),
            "modifiedTestFiles": list(self.modified_test_files),
            "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
        }

    @classmethod
    def from_artifact(cls, data) -> "AnalysisResult":
        if not isinstance(data, dict):
            raise AnalysisFileCorrupt("analysis result must be a JSON object")
        run_all_tests = data.get("runAllTests", False)
        if not isinstance(run_all_tests, bool):
            raise AnalysisFileCorrupt("runAllTests must be true or false")
        if run_all_tests:
            return cls.run_all()
        endpoints = data.get("modifiedEndpoints") or []
        test_files = data.get("modifiedTestFiles") or []
        if not isinstance(endpoints, list) or not isinstance(test_files, list):
            raise AnalysisFileCorrupt("modifiedEndpoints and modifiedTestFiles must be lists")
        return cls(
            run_all_tests=False,
            modified_endpoints=tuple(str(e) for e in endpoints),
            modified_test_files=tuple(str(f) for f in test_files),
        )


def write_analysis(result: AnalysisResult, path) -> AnalysisArtifact:
    artifact = result.to_artifact()
    write_json_atomic(path, artifact)
    return artifact


def read_analysis(path) -> Optional[AnalysisResult]:
    """The stored analysis, or None when the file doesn't exist."""
    if not os.path.exists(path):
        return None
    try:
        data = read_json_file(path)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise AnalysisFileCorrupt(f"Cannot parse analysis file {path}: {exc}") from exc
    return AnalysisResult.from_artifact(data)


def flatten_pairs(pairs) -> List[str]:
    files = []
    for left, right in pairs:
        files.append(left)
        if right:
            files.append(right)
    return unique(file.strip() for file in files if file)


class ChangeImpactAnalyzer:
    """
    Decides between "run all tests" and a set of affected endpoints and test
    files for the current change set.

    Usage:
        analyzer = ChangeImpactAnalyzer(load_config())
        result = analyzer.analyze()
    """

    def __init__(self, config: EpmonConfig, gateway: Optional[VcsGateway] = None, engine=None):
        self.config = config
        self.gateway = gateway or VcsGateway(
            config.vcs, config.base_branch, cwd=config.base_dir
        )
        self.engine = get_engine(engine if engine is not None else config.graph_engine)

    @cached_property
    def repo_root(self) -> Optional[str]:
        return self.gateway.toplevel()

    @cached_property
    def project_root(self) -> Optional[str]:
        """Repository-relative project directory; defaults to the working directory."""
        if self.config.project_root:
            return self.config.project_root.replace("\\", "/").strip("/")
        if not self.repo_root:
            return None
        rel_dir = os.path.relpath(
            os.path.realpath(self.config.base_dir), os.path.realpath(self.repo_root)
        ).replace("\\", "/")
        if rel_dir == "." or rel_dir.startswith(".."):
            return None
        return rel_dir

    @property
    def project_dir(self):
        if self.repo_root and self.project_root:
            return os.path.join(self.repo_root, self.project_root)
        return self.repo_root or self.config.base_dir

    def analyze(self) -> AnalysisResult:
        if self.gateway.were_files_modified(self.config.force_all_tests_files):
            logger.info("Files forcing a full run were modified")
            return AnalysisResult.run_all()

        if self.config.workspace_patterns and self.workspace_dependency_changed():
            return AnalysisResult.run_all()

        changed_files = self.normalize(self.gateway.changed_files())
        if not changed_files:
            return AnalysisResult()

        affected_files = self.affected_files(changed_files)
        endpoints, test_files = self.classify(affected_files, changed_files)
        return AnalysisResult(
            run_all_tests=False,
            modified_endpoints=tuple(endpoints),
            modified_test_files=tuple(test_files),
        )

    def workspace_dependency_changed(self) -> bool:
        if not self.repo_root:
            return False
        directories = dependency_directories(
            self.repo_root, self.project_dir, self.config.workspace_patterns
        )
        changed = changed_dependency_packages(self.gateway.changed_files(), directories)
        if changed:
            logger.info(f"Workspace dependencies changed: {', '.join(changed)}")
            return True
        return False

    def normalize(self, changed_files: Iterable[str]) -> List[str]:
        """Make paths project-root relative, dropping files outside the project."""
        temp_prefix = self.config.temp_dir.replace("\\", "/").strip("/") + "/"
        normalized = (
            relative_to_root(path, self.project_root) for path in changed_files
        )
        return unique(
            path for path in normalized if path and not path.startswith(temp_prefix)
        )

    def affected_files(self, changed_files: List[str]) -> List[str]:
        pattern = create_file_pattern(changed_files)
        try:
            pairs = self.engine.affected_pairs(
                self.project_dir,
                pattern,
                include_only=self.config.include_only,
                exclude=self.config.exclude,
            )
        except GraphAnalysisFailure as exc:
            logger.warning(f"Dependency analysis failed, using changed files only: {exc}")
            return []
        return flatten_pairs(pairs)

    def classify(self, affected_files, changed_files) -> Tuple[List[str], List[str]]:
        resolve_endpoint = self.config.file_resolver
        test_pattern = self.config.test_files_pattern

        endpoints, test_files = [], []
        for path in list(affected_files) + list(changed_files):
            try:
                endpoints.append(resolve_endpoint(path))
            except Exception as exc:  # user-supplied get_endpoint_from_file
                logger.warning(f"Cannot map {path} to an endpoint: {exc}")
            if test_pattern and test_pattern.search(path):
                test_files.append(path)
        return unique(endpoints), unique(test_files)


def analyze_changes(config: EpmonConfig, **kwargs) -> AnalysisResult:
    return ChangeImpactAnalyzer(config, **kwargs).analyze()
