"""
Workspace (monorepo) package detection.

A change inside a sibling package that the current package depends on is
invisible to an import scan limited to the current package, so the analyzer
forces a full run when one happens.
"""
import glob
import json
import os
import tomllib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name

from epmon.common import get_logger

logger = get_logger(__name__)

NPM_DEPENDENCY_KEYS = (
    "dependencies",
    "devDependencies",
    "peerDependencies",
    "optionalDependencies",
)


@dataclass
class PackageManifest:
    name: str
    directory: str
    dependencies: Set[str] = field(default_factory=set)


def _read_package_json(path) -> Optional[PackageManifest]:
    with open(path, "r", encoding="utf8") as manifest_file:
        data = json.load(manifest_file)
    if not isinstance(data, dict) or not data.get("name"):
        return None
    dependencies = set()
    for key in NPM_DEPENDENCY_KEYS:
        dependencies.update((data.get(key) or {}).keys())
    return PackageManifest(
        name=data["name"],
        directory=os.path.dirname(path),
        dependencies=dependencies,
    )


def _requirement_name(requirement: str) -> Optional[str]:
    try:
        return canonicalize_name(Requirement(requirement).name)
    except InvalidRequirement:
        logger.debug(f"Ignoring unparseable requirement {requirement!r}")
        return None


def _read_pyproject(path) -> Optional[PackageManifest]:
    with open(path, "rb") as manifest_file:
        data = tomllib.load(manifest_file)
    project = data.get("project") or {}
    if not project.get("name"):
        return None
    requirements = list(project.get("dependencies") or [])
    for extra in (project.get("optional-dependencies") or {}).values():
        requirements.extend(extra)
    dependencies = {
        name for name in (_requirement_name(req) for req in requirements) if name
    }
    return PackageManifest(
        name=canonicalize_name(project["name"]),
        directory=os.path.dirname(path),
        dependencies=dependencies,
    )


def read_manifest(directory) -> Optional[PackageManifest]:
    """Manifest of a package directory: ``package.json`` first, then ``pyproject.toml``."""
    readers = (
        ("package.json", _read_package_json),
        ("pyproject.toml", _read_pyproject),
    )
    for filename, reader in readers:
        path = os.path.join(directory, filename)
        if not os.path.isfile(path):
            continue
        try:
            manifest = reader(path)
        except (OSError, ValueError, tomllib.TOMLDecodeError) as exc:
            logger.warning(f"Cannot read {path}: {exc}")
            continue
        if manifest:
            return manifest
    return None


def find_workspace_packages(repo_root, patterns: List[str]) -> Dict[str, PackageManifest]:
    packages = {}
    for pattern in patterns:
        for directory in sorted(glob.glob(os.path.join(repo_root, pattern))):
            if not os.path.isdir(directory):
                continue
            manifest = read_manifest(directory)
            if manifest:
                packages[manifest.name] = manifest
    return packages


def dependency_directories(repo_root, package_dir, patterns) -> List[str]:
    """
    Repository-relative directories of the workspace packages that the
    package in ``package_dir`` depends on directly.
    """
    current = read_manifest(package_dir)
    if current is None:
        logger.warning(f"No package manifest in {package_dir}, skipping workspace check")
        return []

    current_dir = os.path.realpath(package_dir)
    directories = []
    for name, manifest in find_workspace_packages(repo_root, patterns).items():
        if os.path.realpath(manifest.directory) == current_dir:
            continue
        if name in current.dependencies:
            rel_dir = os.path.relpath(manifest.directory, repo_root).replace("\\", "/")
            directories.append(rel_dir)
    return sorted(directories)


def changed_dependency_packages(changed_files, directories) -> List[str]:
    return [
        directory
        for directory in directories
        if any(path.startswith(directory.rstrip("/") + "/") for path in changed_files)
    ]
