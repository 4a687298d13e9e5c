"""
Entry point for running the package as a module.

Run with:
    python -m koushole
"""

import sys

from koushole.interfaces.cli import main

if __name__ == "__main__":
    sys.exit(main())
