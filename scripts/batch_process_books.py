#!/usr/bin/env python3
"""
Batch Processing Script - Generates chapters and embeddings for every book
that does not have them yet.

This script:
1. Lists official resources and library books with chunks_generated unset
2. Runs the ingestion pipeline on each, one at a time
3. Waits between books (vision OCR free tier is rate limited)
4. Prints a succeeded / empty / failed summary

Exit status is non-zero only when configuration is missing; individual
book failures are counted in the summary.

Usage:
    python scripts/batch_process_books.py
    python scripts/batch_process_books.py --collection library --limit 5
"""

import sys
from pathlib import Path

# Add parent directory to path so we can import koushole
sys.path.insert(0, str(Path(__file__).parent.parent))

from koushole.interfaces.cli import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main(["batch", *sys.argv[1:]]))
