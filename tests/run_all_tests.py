#!/usr/bin/env python3
"""
Runs the flow metrics test modules as one suite
"""
# /// script
# requires-python = ">=3.8"
# dependencies = [
#     "requests",
#     "pandas",
#     "numpy",
#     "rich",
#     "python-dotenv",
#     "pyyaml",
#     "pytest",
# ]
# ///

import argparse
import importlib
import os
import sys
import unittest
from typing import List

# Project modules live one level up, test modules next to this file
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

TEST_MODULES = {
    'test_utils_dates': 'UTC timestamps and ISO week helpers',
    'test_github_client': 'Pagination, quota waits, pacing and cancellation',
    'test_lifecycle': 'Timeline normalization and lifecycle aggregation',
    'test_stage_mapping': 'Board configuration and stage timestamps',
    'test_flow_metrics': 'Lead/cycle, throughput control chart, stocks, PR stats',
    'test_csv_io': 'CSV layout and atomic writes',
    'test_sync_issues': 'Organization import',
    'test_calculate_metrics': 'Metrics calculation end to end',
}


def build_suite(names: List[str]) -> unittest.TestSuite:
    """Load the named modules into one suite, printing how many cases each contributes"""
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for name in names:
        module = importlib.import_module(name)
        module_suite = loader.loadTestsFromModule(module)
        print(f"   📦 {name:<28} {module_suite.countTestCases():>4} cases")
        suite.addTests(module_suite)
    return suite


def run(names: List[str], verbosity: int) -> int:
    print("🧪 GitHub Flow Metrics tests")
    print("=" * 50)
    suite = build_suite(names)
    print("=" * 50)

    result = unittest.TextTestRunner(verbosity=verbosity).run(suite)

    broken = len(result.failures) + len(result.errors)
    print(f"\n📊 {result.testsRun} run, {broken} broken, {len(result.skipped)} skipped")
    if result.wasSuccessful():
        print("🎉 Suite is green")
        return 0
    print("💥 Suite has failures")
    return 1


def main():
    parser = argparse.ArgumentParser(description='Run the flow metrics test modules')
    parser.add_argument('modules', nargs='*', help='Test modules to run (default: all)')
    parser.add_argument('--list', action='store_true', help='List the test modules and exit')
    parser.add_argument('-v', '--verbose', action='store_true', help='Print every test case')
    args = parser.parse_args()

    if args.list:
        for name, description in TEST_MODULES.items():
            print(f"  {name:<28} {description}")
        return 0

    unknown = [name for name in args.modules if name not in TEST_MODULES]
    if unknown:
        print(f"❌ Unknown test module(s): {', '.join(unknown)}")
        return 2

    return run(args.modules or list(TEST_MODULES), verbosity=2 if args.verbose else 1)


if __name__ == '__main__':
    sys.exit(main())
