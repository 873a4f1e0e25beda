"""Run the photoattest test suite.

Usage:
    python scripts/run_pytest.py            # everything
    python scripts/run_pytest.py --fast     # skip tests marked slow
    python scripts/run_pytest.py -k tiles   # extra args go to pytest
"""

from __future__ import annotations

import subprocess
import sys


def main(argv: list[str]) -> int:
    if sys.version_info < (3, 11):
        print("photoattest requires Python 3.11+; skipping tests.")
        return 0

    args = [sys.executable, "-m", "pytest", "tests/", "-v", "--tb=short", "--strict-markers"]
    if "--fast" in argv:
        argv = [a for a in argv if a != "--fast"]
        args += ["-m", "not slow"]
    return subprocess.call(args + argv)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
