"""Module entry point: ``python -m qemuctl``."""

import sys

from qemuctl.cli import main

if __name__ == "__main__":
    sys.exit(main())
