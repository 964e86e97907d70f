#!/usr/bin/env python3
"""
Command line tool of epmon.

Usage:
    epmon analyze [--config PATH] [--output PATH]
    epmon merge [--config PATH] [--temp-dir PATH] [--output PATH]
    epmon init [--config PATH]

Examples:
    # Analyze changes against the configured base branch
    epmon analyze

    # Analyze against another branch (overrides base_branch)
    EPMON_BASE_BRANCH=develop epmon analyze

    # Fold worker observation files into the endpoint map after a test run
    epmon merge

    # Typical CI pipeline
    epmon analyze && pytest --epmon -n 4; epmon merge
"""

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from epmon import __version__
from epmon.analyzer import ChangeImpactAnalyzer, write_analysis
from epmon.common import EpmonException, get_logger
from epmon.configure import init_config, load_config
from epmon.mapping import merge_endpoint_mappings

logger = get_logger(__name__)


def cmd_analyze(args) -> int:
    print("Loading configuration...")
    config = load_config(args.config)

    print("Analyzing changes...")
    analysis = ChangeImpactAnalyzer(config).analyze()

    output_path = os.path.abspath(args.output or config.analysis_path)
    write_analysis(analysis, output_path)

    print("\nAnalysis complete:")
    print(f"- Run all tests: {str(analysis.run_all_tests).lower()}")
    print(f"- Modified endpoints: {len(analysis.modified_endpoints)}")
    print(f"- Modified test files: {len(analysis.modified_test_files)}")
    if args.verbose:
        for endpoint in analysis.modified_endpoints:
            print(f"  endpoint: {endpoint}")
        for test_file in analysis.modified_test_files:
            print(f"  test file: {test_file}")
    print(f"\nResults saved to: {output_path}")
    return 0


def cmd_merge(args) -> int:
    config = load_config(args.config, require_rules=False, missing_ok=not args.config)
    temp_dir = os.path.abspath(args.temp_dir or config.temp_path)
    output_file = os.path.abspath(args.output or config.endpoint_map_path)

    print("Merging endpoint mappings...")
    report = merge_endpoint_mappings(temp_dir, output_file)
    print(report.summary())
    print("Done!")
    return 0


def cmd_init(args) -> int:
    path = init_config(args.config)
    print(f"Created {os.path.basename(path)}")
    print("\nNext steps:")
    print(f"1. Edit {os.path.basename(path)} to match your project structure")
    print('2. Run "epmon analyze" to analyze changes')
    print('3. Run your end-to-end tests with "pytest --epmon"')
    print('4. Run "epmon merge" to record the endpoints each test visits')
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="epmon",
        description="Select end-to-end tests by the application endpoints a change affects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser(
        "analyze", help="Analyze changes and prepare test execution data"
    )
    analyze.add_argument(
        "-c", "--config", help="Path to configuration file (default: epmon_config.py)"
    )
    analyze.add_argument(
        "-o", "--output", help="Output file for analysis results (default: analysis_file)"
    )
    analyze.add_argument(
        "-v", "--verbose", action="store_true", help="List modified endpoints and test files"
    )
    analyze.set_defaults(func=cmd_analyze)

    merge = subparsers.add_parser(
        "merge", help="Merge test endpoint mappings from worker files"
    )
    merge.add_argument("-c", "--config", help="Path to configuration file")
    merge.add_argument(
        "-d", "--temp-dir", dest="temp_dir", help="Directory with worker files (default: temp_dir)"
    )
    merge.add_argument(
        "-o", "--output", help="Output file for merged mappings (default: test_endpoint_map_file)"
    )
    merge.set_defaults(func=cmd_merge)

    init = subparsers.add_parser("init", help="Create a configuration file")
    init.add_argument(
        "-c", "--config", help="Path of the file to create (default: epmon_config.py)"
    )
    init.set_defaults(func=cmd_init)
    return parser


def main(argv=None):
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    try:
        return args.func(args)
    except (EpmonException, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
