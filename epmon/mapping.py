"""
Test -> endpoints mapping store and the merge of worker observation files.

The store is only written by ``merge_endpoint_mappings``, which runs after
all test workers have exited. Workers only ever write their own
``worker-<id>.json`` file into the temp directory.
"""
import glob
import json
import os
from dataclasses import dataclass, field
from typing import List

from epmon.common import (
    EndpointMap,
    MappingStoreCorrupt,
    WorkerFileCorrupt,
    get_logger,
    is_endpoint_map,
    read_json_file,
    write_json_atomic,
)

logger = get_logger(__name__)

WORKER_FILE_PREFIX = "worker-"
WORKER_FILE_SUFFIX = ".json"


def get_worker_file_path(worker_id: str, temp_dir) -> str:
    return os.path.join(temp_dir, f"{WORKER_FILE_PREFIX}{worker_id}{WORKER_FILE_SUFFIX}")


def list_worker_files(temp_dir) -> List[str]:
    return sorted(
        glob.glob(os.path.join(glob.escape(temp_dir), f"{WORKER_FILE_PREFIX}*{WORKER_FILE_SUFFIX}"))
    )


def load_endpoint_map(path) -> EndpointMap:
    """
    Read the mapping store. A missing file is an empty store; anything
    unreadable raises ``MappingStoreCorrupt``.
    """
    try:
        data = read_json_file(path)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MappingStoreCorrupt(f"Cannot parse endpoint map {path}: {exc}") from exc
    if not is_endpoint_map(data):
        raise MappingStoreCorrupt(
            f"Endpoint map {path} must map test ids to lists of endpoints"
        )
    return data


def load_worker_file(path) -> EndpointMap:
    try:
        data = read_json_file(path)
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
        raise WorkerFileCorrupt(f"Cannot parse {os.path.basename(path)}: {exc}") from exc
    if not is_endpoint_map(data):
        raise WorkerFileCorrupt(
            f"{os.path.basename(path)} must map test ids to lists of endpoints"
        )
    return data


def write_endpoint_map(path, endpoint_map: EndpointMap) -> None:
    write_json_atomic(path, endpoint_map)


@dataclass
class MergeReport:
    output_file: str
    merged_files: List[str] = field(default_factory=list)
    skipped_files: List[str] = field(default_factory=list)
    updated_tests: List[str] = field(default_factory=list)
    total_tests: int = 0

    @property
    def written(self) -> bool:
        return bool(self.merged_files)

    def summary(self) -> str:
        if not self.merged_files and not self.skipped_files:
            return "No worker files found to merge"
        lines = [
            f"Merged {len(self.merged_files)} worker files into {self.output_file}",
            f"- Updated tests: {len(self.updated_tests)}",
            f"- Tests in map: {self.total_tests}",
        ]
        if self.skipped_files:
            lines.append(
                f"- Skipped (kept for inspection): {', '.join(map(os.path.basename, self.skipped_files))}"
            )
        return "\n".join(lines)


def merge_endpoint_mappings(temp_dir, output_file) -> MergeReport:
    """
    Fold every worker observation file in ``temp_dir`` into ``output_file``.

    Worker files are applied in file-name order; for a test present in
    several files the last one wins. A corrupt worker file is skipped and
    left on disk. The merged store replaces ``output_file`` in one step,
    and only then are the consumed worker files deleted.
    """
    report = MergeReport(output_file=str(output_file))
    worker_files = list_worker_files(temp_dir)
    if not worker_files:
        logger.info("No worker files found to merge")
        return report

    merged = load_endpoint_map(output_file)

    for path in worker_files:
        try:
            worker_map = load_worker_file(path)
        except WorkerFileCorrupt as exc:
            logger.warning(f"Error processing {os.path.basename(path)}: {exc}")
            report.skipped_files.append(path)
            continue
        merged.update(worker_map)
        report.merged_files.append(path)
        report.updated_tests.extend(
            test_id for test_id in worker_map if test_id not in report.updated_tests
        )

    report.total_tests = len(merged)
    if not report.merged_files:
        logger.warning("No valid worker files, endpoint map left untouched")
        return report

    write_endpoint_map(output_file, merged)

    for path in report.merged_files:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
    logger.info(f"Merged {len(report.merged_files)} worker files into {output_file}")
    return report
