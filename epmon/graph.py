"""
Dependency graph engines.

An engine answers one question: given a "reaches" pattern (a regex matching
the changed files), which files take part in a dependency path to or from one
of them? The answer is a list of ``(importer, imported)`` pairs; a file with
no edges comes back as ``(file, None)``.
"""
import ast
import os
import re
import subprocess
from typing import Iterable, List, Optional, Set, Tuple

import networkx as nx

from epmon.common import GraphAnalysisFailure, get_logger

logger = get_logger(__name__)

FilePair = Tuple[str, Optional[str]]

ALWAYS_EXCLUDED_DIRS = frozenset(
    [
        "node_modules",
        "dist",
        "build",
        ".git",
        "__pycache__",
        "venv",
        ".venv",
        ".tox",
        ".mypy_cache",
        ".pytest_cache",
    ]
)

JS_EXTENSIONS = (".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".mts", ".cts")
TS_SOURCE_EXTENSIONS = {
    ".js": (".ts", ".tsx"),
    ".jsx": (".tsx",),
    ".mjs": (".mts",),
    ".cjs": (".cts",),
}
PY_EXTENSIONS = (".py",)

JS_IMPORT_PATTERNS = (
    re.compile(r"""\b(?:import|export)\s[^'"`;]*?\bfrom\s*['"]([^'"]+)['"]"""),
    re.compile(r"""\bimport\s*['"]([^'"]+)['"]"""),
    re.compile(r"""\brequire\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"""\bimport\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
)


def scan_project(root_dir, include_only=None, exclude=()) -> List[str]:
    """Root-relative paths of the source files the engine understands."""
    include_re = re.compile(include_only) if include_only else None
    exclude_res = [re.compile(pattern) for pattern in exclude]
    files = []
    for root, dirs, filenames in os.walk(root_dir):
        dirs[:] = sorted(
            d for d in dirs if not d.startswith(".") and d not in ALWAYS_EXCLUDED_DIRS
        )
        for filename in sorted(filenames):
            if not filename.endswith(JS_EXTENSIONS + PY_EXTENSIONS):
                continue
            full_path = os.path.join(root, filename)
            rel_path = os.path.relpath(full_path, root_dir).replace("\\", "/")
            if include_re and not include_re.search(rel_path):
                continue
            if any(regex.search(rel_path) for regex in exclude_res):
                continue
            files.append(rel_path)
    return files


def get_python_imports(file_path, rel_path) -> Set[str]:
    """Dotted module names imported by a Python file, relative imports resolved."""
    try:
        with open(file_path, "r", encoding="utf-8") as source_file:
            tree = ast.parse(source_file.read())
    except (UnicodeDecodeError, SyntaxError, ValueError):
        return set()
    except OSError as exc:
        logger.warning(f"Skipping {file_path} due to error: {exc}")
        return set()

    package_parts = rel_path[: -len(".py")].split("/")[:-1]
    imports = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                imports.add(alias.name)
        elif isinstance(node, ast.ImportFrom):
            if node.level:
                if node.level - 1 > len(package_parts):
                    continue
                base = package_parts[: len(package_parts) - (node.level - 1)]
                module = ".".join(base + ([node.module] if node.module else []))
            else:
                module = node.module
            if not module:
                continue
            imports.add(module)
            for alias in node.names:
                imports.add(f"{module}.{alias.name}")
    return imports


def get_js_imports(file_path) -> Set[str]:
    """Relative import specifiers (``./x``, ``../y``) of a JavaScript/TypeScript file."""
    try:
        with open(file_path, "r", encoding="utf-8") as source_file:
            content = source_file.read()
    except (UnicodeDecodeError, OSError) as exc:
        logger.warning(f"Skipping {file_path} due to error: {exc}")
        return set()

    specifiers = set()
    for pattern in JS_IMPORT_PATTERNS:
        for match in pattern.finditer(content):
            specifier = match.group(1)
            if specifier.startswith("."):
                specifiers.add(specifier)
    return specifiers


def python_module_index(files: Iterable[str]):
    module_to_file = {}
    for file_path in files:
        if not file_path.endswith(".py"):
            continue
        module_name = file_path[: -len(".py")].replace("/", ".")
        module_to_file[module_name] = file_path
        if module_name.endswith(".__init__"):
            module_to_file[module_name[: -len(".__init__")]] = file_path
        # src layout: "src/pkg/mod.py" is imported as "pkg.mod"
        if module_name.startswith("src."):
            module_to_file.setdefault(module_name[len("src."):], file_path)
            if module_name.endswith(".__init__"):
                module_to_file.setdefault(
                    module_name[len("src."): -len(".__init__")], file_path
                )
    return module_to_file


def resolve_python_import(module_name, module_to_file) -> Optional[str]:
    if module_name in module_to_file:
        return module_to_file[module_name]
    if "." in module_name:
        parent = module_name.rsplit(".", 1)[0]
        return module_to_file.get(parent)
    return None


def resolve_js_import(importer, specifier, known_files: Set[str]) -> Optional[str]:
    base = os.path.normpath(
        os.path.join(os.path.dirname(importer), specifier)
    ).replace("\\", "/")
    candidates = [base]
    candidates.extend(base + ext for ext in JS_EXTENSIONS)
    candidates.extend(f"{base}/index{ext}" for ext in JS_EXTENSIONS)
    # TypeScript sources are imported under their emitted name ("./util.js" -> util.ts)
    stem, ext = os.path.splitext(base)
    candidates.extend(stem + ts_ext for ts_ext in TS_SOURCE_EXTENSIONS.get(ext, ()))
    for candidate in candidates:
        if candidate in known_files:
            return candidate
    return None


def build_import_graph(root_dir, include_only=None, exclude=()) -> nx.DiGraph:
    """Directed graph of project files, ``importer -> imported``."""
    files = scan_project(root_dir, include_only=include_only, exclude=exclude)
    known_files = set(files)
    module_to_file = python_module_index(files)

    graph = nx.DiGraph()
    for file_path in files:
        graph.add_node(file_path)
        full_path = os.path.join(root_dir, file_path)
        if file_path.endswith(PY_EXTENSIONS):
            targets = (
                resolve_python_import(name, module_to_file)
                for name in get_python_imports(full_path, file_path)
            )
        else:
            targets = (
                resolve_js_import(file_path, specifier, known_files)
                for specifier in get_js_imports(full_path)
            )
        for target in targets:
            if target and target != file_path:
                graph.add_edge(file_path, target)
    return graph


class DependencyGraphEngine:
    def affected_pairs(
        self, root, reaches: str, include_only=None, exclude=()
    ) -> List[FilePair]:
        raise NotImplementedError


class ImportGraphEngine(DependencyGraphEngine):
    """Built-in engine: static import scan of Python and JavaScript/TypeScript files."""

    def affected_pairs(self, root, reaches, include_only=None, exclude=()):
        if not reaches:
            return []
        try:
            reaches_re = re.compile(reaches)
            graph = build_import_graph(root, include_only=include_only, exclude=exclude)
        except (re.error, OSError, RecursionError) as exc:
            raise GraphAnalysisFailure(f"Cannot analyze {root}: {exc}") from exc

        targets = [node for node in graph.nodes if reaches_re.search(node)]
        closure = set(targets)
        for target in targets:
            closure |= nx.ancestors(graph, target)
            closure |= nx.descendants(graph, target)

        # every dependency of a closure module is reported, as depcruise does
        pairs: List[FilePair] = sorted(graph.out_edges(closure))
        listed = {file for pair in pairs for file in pair}
        pairs.extend((node, None) for node in sorted(closure - listed))
        logger.debug(f"{len(targets)} changed files, {len(closure)} files in their closure")
        return pairs


ARROW_RE = re.compile(r"\s*(?:→|->|â†’)\s*")


def parse_cruise_output(output: str) -> List[FilePair]:
    pairs: List[FilePair] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = ARROW_RE.split(line.strip(), maxsplit=1)
        left = parts[0].strip()
        right = parts[1].strip() if len(parts) > 1 else None
        if left:
            pairs.append((left, right or None))
    return pairs


class DependencyCruiserEngine(DependencyGraphEngine):
    """Delegates to the dependency-cruiser command line (``npx depcruise``)."""

    def __init__(self, command=("npx", "--no-install", "depcruise"), timeout=600):
        self.command = list(command)
        self.timeout = timeout

    def affected_pairs(self, root, reaches, include_only=None, exclude=()):
        if not reaches:
            return []
        excluded = list(exclude) + ["node_modules", "dist", "build", ".git"]
        args = self.command + [
            "--output-type",
            "text",
            "--reaches",
            reaches,
            "--exclude",
            "|".join(f"({pattern})" for pattern in excluded),
        ]
        if include_only:
            args.extend(["--include-only", include_only])
        args.append(".")
        try:
            result = subprocess.run(
                args,
                cwd=root,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise GraphAnalysisFailure(f"dependency-cruiser failed: {exc}") from exc
        return parse_cruise_output(result.stdout)


class CallableEngine(DependencyGraphEngine):
    def __init__(self, func):
        self.func = func

    def affected_pairs(self, root, reaches, include_only=None, exclude=()):
        if not reaches:
            return []
        try:
            return [tuple(pair) for pair in self.func(root, reaches, include_only, list(exclude))]
        except Exception as exc:  # user-supplied engine
            raise GraphAnalysisFailure(f"graph engine failed: {exc}") from exc


ENGINES = {
    "imports": ImportGraphEngine,
    "dependency-cruiser": DependencyCruiserEngine,
}


def get_engine(spec) -> DependencyGraphEngine:
    if isinstance(spec, DependencyGraphEngine):
        return spec
    if callable(spec):
        return CallableEngine(spec)
    try:
        return ENGINES[spec]()
    except KeyError:
        raise GraphAnalysisFailure(
            f"Unknown graph engine {spec!r}, expected one of {sorted(ENGINES)}"
        ) from None
