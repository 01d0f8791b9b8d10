#!/usr/bin/env python3
"""
Test runner for Directory Sync.

Runs the whole suite, or only the modules named on the command line
(``engine`` and ``test_engine.py`` both select tests/test_engine.py).
"""

import os
import sys

import pytest


def resolve_targets(tests_dir, names):
    targets = []
    for name in names:
        file_name = name if name.endswith('.py') else f"{name}.py"
        if not file_name.startswith('test_'):
            file_name = f"test_{file_name}"
        targets.append(os.path.join(tests_dir, file_name))
    return targets


def main(argv=None):
    tests_dir = os.path.dirname(os.path.abspath(__file__))
    names = sys.argv[1:] if argv is None else argv

    targets = resolve_targets(tests_dir, names) if names else [tests_dir]
    missing = [target for target in targets if not os.path.exists(target)]
    if missing:
        for target in missing:
            print(f"No such test module: {os.path.basename(target)}")
        return 1

    print(f"Running {len(targets)} target(s) under {tests_dir}")
    return int(pytest.main(['-v', '--rootdir', os.path.dirname(tests_dir)] + targets))


if __name__ == "__main__":
    sys.exit(main())
