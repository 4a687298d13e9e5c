"""
Quality gate for direct text extraction.

Scanned Bangla textbooks often give back a few hundred characters of page
numbers and broken glyphs instead of nothing at all, so the threshold is a
length floor rather than an emptiness check.
"""

from koushole.config import MIN_EXTRACTED_CHARS


def is_text_sufficient(text: str | None, threshold: int = MIN_EXTRACTED_CHARS) -> bool:
    """
    Decide whether direct extraction is good enough to skip OCR.

    Args:
        text: Extracted text (may be None or empty)
        threshold: Minimum length after trimming whitespace

    Returns:
        True if the trimmed text has at least `threshold` characters

    Example:
        is_text_sufficient("x" * 499)  # False
        is_text_sufficient("x" * 500)  # True
    """
    if not text:
        return False
    return len(text.strip()) >= threshold
