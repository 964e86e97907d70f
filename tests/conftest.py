"""
Shared fixtures for epmon tests.

Plugin behaviour is tested in-process with pytester; VCS and analyzer tests
build throwaway git repositories under tmp_path.
"""
import os
import subprocess

import pytest

pytest_plugins = ["pytester"]

GIT_ENV = {
    "GIT_AUTHOR_NAME": "epmon",
    "GIT_AUTHOR_EMAIL": "epmon@example.com",
    "GIT_COMMITTER_NAME": "epmon",
    "GIT_COMMITTER_EMAIL": "epmon@example.com",
}


class GitRepo:
    def __init__(self, path):
        self.path = path

    def git(self, *args):
        env = {**os.environ, **GIT_ENV}
        return subprocess.run(
            ["git", *args],
            cwd=self.path,
            capture_output=True,
            text=True,
            check=True,
            env=env,
        ).stdout

    def write(self, relpath, content):
        full_path = self.path / relpath
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf8")
        return full_path

    def append(self, relpath, content):
        full_path = self.path / relpath
        with open(full_path, "a", encoding="utf8") as appended:
            appended.write(content)

    def commit(self, message="commit"):
        self.git("add", "-A")
        self.git("commit", "-q", "-m", message)


@pytest.fixture
def git_repo(tmp_path):
    """An empty git repository whose current branch is ``main``."""
    repo = GitRepo(tmp_path / "repo")
    repo.path.mkdir()
    repo.git("init", "-q")
    repo.git("symbolic-ref", "HEAD", "refs/heads/main")
    repo.git("config", "commit.gpgsign", "false")
    exclude = repo.path / ".git" / "info" / "exclude"
    exclude.parent.mkdir(exist_ok=True)
    exclude.write_text("__pycache__/\n", encoding="utf8")
    return repo


NEXT_BASIC = {
    "pages/index.js": (
        'import { indexAnchor } from "../src/anchors.js";\n'
        "export default function Index() { return indexAnchor; }\n"
    ),
    "pages/about.js": (
        'import { aboutAnchor } from "../src/anchors.js";\n'
        'import { aboutTitle } from "../src/messages-about.js";\n'
        "export default function About() { return aboutTitle + aboutAnchor; }\n"
    ),
    "src/anchors.js": (
        'import { aboutHref } from "./anchors-about.js";\n'
        'export const indexAnchor = "/";\n'
        "export const aboutAnchor = aboutHref;\n"
    ),
    "src/anchors-about.js": 'export const aboutHref = "/about";\n',
    "src/messages-about.js": 'export const aboutTitle = "About";\n',
    "tests/test.js": 'export { test } from "@playwright/test";\n',
    "tests/index.spec.js": 'import { test } from "./test.js";\n',
    "tests/about.spec.js": (
        'import { test } from "./test";\n'
        'import { aboutTitle } from "../src/messages-about.js";\n'
    ),
    "README.md": "# next basic\n",
    "package.json": '{"name": "next-basic"}\n',
}

NEXT_BASIC_CONFIG = '''
endpoint_regex = r"^pages/.*\\.js$"
test_files_regex = r"^tests/.*\\.spec\\.js$"
'''


@pytest.fixture
def next_basic(git_repo):
    """A committed JavaScript project with two pages and two spec files."""
    for relpath, content in NEXT_BASIC.items():
        git_repo.write(relpath, content)
    git_repo.write("epmon_config.py", NEXT_BASIC_CONFIG)
    git_repo.commit("initial")
    git_repo.git("checkout", "-q", "-b", "feature")
    return git_repo


@pytest.fixture(autouse=True)
def clean_epmon_environment(monkeypatch):
    for name in ("EPMON_CONFIG", "EPMON_BASE_BRANCH"):
        monkeypatch.delenv(name, raising=False)
