"""
Version control queries.

Every command failure is swallowed and reported as "nothing changed": a
broken or missing base branch makes epmon select fewer tests, never crash.
"""
import fnmatch
import subprocess
from typing import Callable, Iterable, List, Optional

from epmon.common import VcsQueryFailure, get_logger, unique

logger = get_logger(__name__)

VCS_TIMEOUT = 60

GLOB_CHARS = ("*", "?", "[")


def run_vcs_command(vcs: str, args: List[str], cwd=None) -> str:
    """Run ``vcs args...`` and return its stripped stdout."""
    try:
        result = subprocess.run(
            [vcs, *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=VCS_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise VcsQueryFailure(f"{vcs} {' '.join(args)} failed: {exc}") from exc
    return result.stdout.strip()


def parse_name_status(output: str) -> List[str]:
    """
    Paths from ``diff --name-status`` output, without deleted files.

    Renames and copies (``R100\\told\\tnew``) contribute their new path.
    """
    paths = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        status = parts[0].strip()
        if status.startswith("D") or len(parts) < 2:
            continue
        paths.append(parts[-1].strip())
    return [path for path in paths if path]


def file_matches(changed_file: str, candidate: str) -> bool:
    """
    ``changed_file`` is ``candidate``, or lives at ``.../candidate``.

    Candidates with glob characters are matched with fnmatch instead.
    """
    if any(char in candidate for char in GLOB_CHARS):
        return fnmatch.fnmatch(changed_file, candidate) or fnmatch.fnmatch(
            changed_file, f"*/{candidate}"
        )
    return changed_file == candidate or changed_file.endswith(f"/{candidate}")


class VcsGateway:
    """
    Change set of the working tree against the merge base with a branch.

    The change set is computed once per instance; ``executor`` is the
    command runner (``run_vcs_command`` signature) and can be replaced in tests.
    """

    def __init__(
        self,
        vcs: str = "git",
        base_branch: str = "main",
        cwd: Optional[str] = None,
        executor: Optional[Callable[..., str]] = None,
    ):
        self.vcs = vcs
        self.base_branch = base_branch
        self.cwd = cwd
        self._executor = executor or run_vcs_command
        self._changed_files: Optional[List[str]] = None

    def _run(self, *args) -> str:
        try:
            return self._executor(self.vcs, list(args), cwd=self.cwd)
        except VcsQueryFailure as exc:
            logger.warning(f"{exc} (assuming no changes)")
            return ""

    def merge_base(self) -> str:
        return self._run("merge-base", "HEAD", self.base_branch)

    def toplevel(self) -> Optional[str]:
        return self._run("rev-parse", "--show-toplevel") or None

    def _untracked_files(self) -> List[str]:
        if self.vcs != "git" and not self.vcs.endswith("/git"):
            return []
        output = self._run("ls-files", "--others", "--exclude-standard", "--full-name")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def changed_files(self) -> List[str]:
        if self._changed_files is None:
            self._changed_files = self._compute_changed_files()
        return list(self._changed_files)

    def _compute_changed_files(self) -> List[str]:
        merge_base = self.merge_base()
        if not merge_base:
            logger.warning(
                f"Cannot find merge base with {self.base_branch}, assuming no changes"
            )
            return []
        output = self._run("diff", "--name-status", merge_base)
        changed = parse_name_status(output)
        changed.extend(self._untracked_files())
        return unique(changed)

    def were_files_modified(self, candidates: Iterable[str]) -> bool:
        changed = self.changed_files()
        return any(
            file_matches(changed_file, candidate)
            for candidate in candidates
            for changed_file in changed
        )


def get_changed_files(vcs: str, base_branch: str, cwd=None) -> List[str]:
    return VcsGateway(vcs, base_branch, cwd=cwd).changed_files()


def were_files_modified(vcs: str, base_branch: str, files, cwd=None) -> bool:
    return VcsGateway(vcs, base_branch, cwd=cwd).were_files_modified(files)
