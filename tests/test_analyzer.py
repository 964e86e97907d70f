"""
Tests for change impact analysis, run against real git repositories.
"""
import json

import pytest

from epmon.analyzer import (
    AnalysisResult,
    ChangeImpactAnalyzer,
    analyze_changes,
    read_analysis,
    write_analysis,
)
from epmon.common import AnalysisFileCorrupt, GraphAnalysisFailure
from epmon.configure import load_config
from epmon.graph import DependencyGraphEngine


def analyze(repo, **kwargs):
    config = load_config(base_dir=str(repo.path))
    return analyze_changes(config, **kwargs)


class FailingEngine(DependencyGraphEngine):
    def affected_pairs(self, root, reaches, include_only=None, exclude=()):
        raise GraphAnalysisFailure("cannot parse project")


class TestForceAllTests:
    def test_lockfile_change_forces_all_tests(self, next_basic):
        next_basic.write("pnpm-lock.yaml", "lockfileVersion: 9\n")
        next_basic.append("pages/about.js", "// change\n")

        result = analyze(next_basic)

        assert result == AnalysisResult(run_all_tests=True)
        assert result.modified_endpoints == ()
        assert result.modified_test_files == ()

    def test_manifest_change_forces_all_tests(self, next_basic):
        next_basic.write("package.json", '{"name": "next-basic", "version": "2"}\n')

        assert analyze(next_basic).run_all_tests

    def test_configured_file_forces_all_tests(self, next_basic):
        next_basic.append(
            "epmon_config.py", 'force_all_tests_files = ["playwright.config.mjs"]\n'
        )
        next_basic.write("playwright.config.mjs", "// change\n")

        assert analyze(next_basic).run_all_tests


class TestAffectedEndpoints:
    def test_no_changes(self, next_basic):
        result = analyze(next_basic)

        assert result == AnalysisResult(run_all_tests=False)

    def test_page_change(self, next_basic):
        next_basic.append("pages/about.js", "// change\n")

        result = analyze(next_basic)

        assert not result.run_all_tests
        assert result.modified_endpoints == ("pages/about.js",)
        assert result.modified_test_files == ()

    def test_page_dependency_change(self, next_basic):
        next_basic.append("src/anchors-about.js", "// change\n")

        result = analyze(next_basic)

        assert sorted(result.modified_endpoints) == ["pages/about.js", "pages/index.js"]
        assert result.modified_test_files == ()

    def test_page_and_test_dependency_change(self, next_basic):
        next_basic.append("src/messages-about.js", "// change\n")

        result = analyze(next_basic)

        assert result.modified_endpoints == ("pages/about.js",)
        assert result.modified_test_files == ("tests/about.spec.js",)

    def test_test_file_change(self, next_basic):
        next_basic.append("tests/about.spec.js", "// change\n")

        result = analyze(next_basic)

        assert result.modified_endpoints == ()
        assert result.modified_test_files == ("tests/about.spec.js",)

    def test_tests_dependency_change(self, next_basic):
        next_basic.append("tests/test.js", "// change\n")

        result = analyze(next_basic)

        assert result.modified_endpoints == ()
        assert sorted(result.modified_test_files) == [
            "tests/about.spec.js",
            "tests/index.spec.js",
        ]

    def test_irrelevant_file_change(self, next_basic):
        next_basic.append("README.md", "change\n")

        assert analyze(next_basic) == AnalysisResult()

    def test_new_page(self, next_basic):
        next_basic.write("pages/new.js", "// new\n")

        assert analyze(next_basic).modified_endpoints == ("pages/new.js",)

    def test_new_test_file(self, next_basic):
        next_basic.write("tests/new.spec.js", "// new\n")

        result = analyze(next_basic)

        assert result.modified_endpoints == ()
        assert result.modified_test_files == ("tests/new.spec.js",)

    def test_graph_failure_keeps_changed_files(self, next_basic):
        next_basic.append("src/anchors-about.js", "// change\n")
        next_basic.append("pages/about.js", "// change\n")

        result = analyze(next_basic, engine=FailingEngine())

        assert result.modified_endpoints == ("pages/about.js",)

    def test_unknown_base_branch_selects_nothing(self, next_basic):
        next_basic.append("epmon_config.py", 'base_branch = "no-such-branch"\n')
        next_basic.append("pages/about.js", "// change\n")

        assert analyze(next_basic) == AnalysisResult()


CUSTOM_ENDPOINTS_CONFIG = '''
import re

endpoint_regex = r"^app[12]/src/.*\\.jsx?$"
test_files_regex = r"^tests/.*\\.spec\\.js$"
project_root = "examples/custom-endpoints"


def get_endpoint_from_file(path):
    match = re.match(r"^app([12])", path)
    return f"app{match.group(1)}" if match else None
'''


@pytest.fixture
def custom_endpoints(git_repo):
    project = "examples/custom-endpoints"
    files = {
        "app1/src/App.jsx": 'import { Shared } from "../../src/App.jsx";\n',
        "app2/src/App.jsx": "export const App2 = 2;\n",
        "src/App.jsx": "export const Shared = 1;\n",
        "tests/app1.spec.js": "",
        "tests/app2.spec.js": "",
    }
    for relpath, content in files.items():
        git_repo.write(f"{project}/{relpath}", content)
    git_repo.write(f"{project}/epmon_config.py", CUSTOM_ENDPOINTS_CONFIG)
    git_repo.write("other/pages/index.js", "")
    git_repo.commit("initial")
    return git_repo, git_repo.path / project


class TestCustomEndpoints:
    def test_file_callback_maps_many_files_to_one_endpoint(self, custom_endpoints):
        repo, project = custom_endpoints
        repo.append("examples/custom-endpoints/app2/src/App.jsx", "// change\n")
        repo.write("examples/custom-endpoints/app2/src/Other.jsx", "// new\n")

        result = analyze_changes(load_config(base_dir=str(project)))

        assert result.modified_endpoints == ("app2",)

    def test_shared_module_reaches_through_callback(self, custom_endpoints):
        repo, project = custom_endpoints
        repo.append("examples/custom-endpoints/src/App.jsx", "// change\n")

        result = analyze_changes(load_config(base_dir=str(project)))

        assert result.modified_endpoints == ("app1",)

    def test_files_outside_project_root_are_dropped(self, custom_endpoints):
        repo, project = custom_endpoints
        repo.append("other/pages/index.js", "// change\n")

        result = analyze_changes(load_config(base_dir=str(project)))

        assert result == AnalysisResult()

    def test_project_root_defaults_to_working_directory(self, custom_endpoints):
        repo, project = custom_endpoints
        config_path = project / "epmon_config.py"
        config_path.write_text(
            config_path.read_text(encoding="utf8").replace(
                'project_root = "examples/custom-endpoints"', ""
            ),
            encoding="utf8",
        )
        repo.commit("drop project_root")
        repo.append("examples/custom-endpoints/app2/src/App.jsx", "// change\n")

        analyzer = ChangeImpactAnalyzer(load_config(base_dir=str(project)))

        assert analyzer.project_root == "examples/custom-endpoints"
        assert analyzer.analyze().modified_endpoints == ("app2",)


@pytest.fixture
def workspace(git_repo):
    git_repo.write(
        "packages/web/package.json",
        json.dumps({"name": "@acme/web", "dependencies": {"@acme/ui": "workspace:*"}}),
    )
    git_repo.write("packages/web/pages/index.js", "")
    git_repo.write(
        "packages/web/epmon_config.py",
        'endpoint_regex = r"^pages/"\n'
        'test_files_regex = r"^tests/"\n'
        'project_root = "packages/web"\n'
        'workspace_patterns = ["packages/*"]\n',
    )
    git_repo.write("packages/ui/package.json", json.dumps({"name": "@acme/ui"}))
    git_repo.write("packages/ui/index.js", "")
    git_repo.write("packages/other/package.json", json.dumps({"name": "@acme/other"}))
    git_repo.write("packages/other/index.js", "")
    git_repo.commit("initial")
    return git_repo


class TestWorkspaceDependencies:
    def test_dependency_package_change_forces_all_tests(self, workspace):
        workspace.append("packages/ui/index.js", "// changed this file\n")

        config = load_config(base_dir=str(workspace.path / "packages/web"))

        assert analyze_changes(config).run_all_tests

    def test_unrelated_package_change(self, workspace):
        workspace.append("packages/other/index.js", "// changed this file\n")

        config = load_config(base_dir=str(workspace.path / "packages/web"))

        assert not analyze_changes(config).run_all_tests


class TestAnalysisArtifact:
    def test_write_creates_parent_directories(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "analysis.json"
        result = AnalysisResult(False, ("pages/about.js",), ("tests/about.spec.js",))

        artifact = write_analysis(result, str(path))

        stored = json.loads(path.read_text(encoding="utf8"))
        assert stored == artifact
        assert stored["runAllTests"] is False
        assert stored["modifiedEndpoints"] == ["pages/about.js"]
        assert stored["modifiedTestFiles"] == ["tests/about.spec.js"]
        assert stored["timestamp"].endswith("Z")
        assert read_analysis(str(path)) == result

    def test_missing_artifact(self, tmp_path):
        assert read_analysis(str(tmp_path / "analysis.json")) is None

    def test_run_all_ignores_stored_sets(self, tmp_path):
        path = tmp_path / "analysis.json"
        path.write_text(
            json.dumps({"runAllTests": True, "modifiedEndpoints": ["x"], "modifiedTestFiles": []}),
            encoding="utf8",
        )

        assert read_analysis(str(path)) == AnalysisResult.run_all()

    def test_corrupt_artifact(self, tmp_path):
        path = tmp_path / "analysis.json"
        path.write_text("{not json", encoding="utf8")

        with pytest.raises(AnalysisFileCorrupt):
            read_analysis(str(path))

    def test_run_all_result_cannot_carry_sets(self):
        with pytest.raises(ValueError):
            AnalysisResult(True, ("pages/about.js",), ())

    def test_run_all_flag_must_be_boolean(self, tmp_path):
        path = tmp_path / "analysis.json"
        path.write_text(
            json.dumps({"runAllTests": "false", "modifiedEndpoints": [], "modifiedTestFiles": []}),
            encoding="utf8",
        )

        with pytest.raises(AnalysisFileCorrupt, match="runAllTests"):
            read_analysis(str(path))
