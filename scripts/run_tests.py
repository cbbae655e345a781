#!/usr/bin/env python
"""
Test runner for agent-worker.

Usage:
    python scripts/run_tests.py            # all tests
    python scripts/run_tests.py daemon     # tests/test_daemon.py only
"""

import os
import subprocess
import sys
from pathlib import Path


def run_tests(test_pattern="", verbose=True):
    """
    Run pytest on the tests directory.

    Args:
        test_pattern: Test file name inside tests/ (default: every test file)
        verbose: Whether to run with verbose output
    """
    os.chdir(Path(__file__).resolve().parent.parent)

    cmd = [sys.executable, "-m", "pytest", f"tests/{test_pattern}" if test_pattern else "tests/"]
    if verbose:
        cmd.append("-v")
    cmd.append("--tb=short")

    print(f"Running: {' '.join(cmd)}")
    print("=" * 60)

    try:
        result = subprocess.run(cmd, check=False)
        return result.returncode == 0
    except FileNotFoundError:
        print("Error: pytest not found. Install with: pip install -e '.[test]'")
        return False


def main():
    """Main entry point for test runner."""
    if len(sys.argv) > 1:
        test_module = sys.argv[1]
        if not test_module.startswith("test_"):
            test_module = f"test_{test_module}"
        if not test_module.endswith(".py"):
            test_module = f"{test_module}.py"
        print(f"Running tests for module: {test_module}")
        success = run_tests(test_module)
    else:
        print("Running all unit tests...")
        success = run_tests()

    if success:
        print("\nAll tests passed!")
    else:
        print("\nSome tests failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
