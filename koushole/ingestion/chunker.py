"""
Text Chunker - Splits document text into overlapping pieces for embedding.

Key Concepts:
- Chunk Size: characters per window (default: 2000)
- Overlap: characters shared by neighbouring windows (default: 200)
- Break markers: before cutting, look back from the window end for the
  nearest ". ", "। ", blank line, newline or space, but only accept one past
  the window midpoint; otherwise cut at the raw window edge
- Chunks shorter than 50 characters are dropped (running headers/footers)

Example:
    Text of 2450 characters, size 2000, overlap 200:

    Chunk 0: [0, e)            e = last break marker in (1000, 2000]
    Chunk 1: [e - 200, 2450)   the remainder, starting 200 before e
"""

from dataclasses import dataclass, field

from koushole.config import BREAK_MARKERS, CHUNK_OVERLAP, CHUNK_SIZE, MIN_CHUNK_CHARS


@dataclass
class TextChunk:
    """
    Represents a single chunk of text with its position.

    Attributes:
        text: The chunk content (whitespace-trimmed)
        chunk_index: Position of this chunk (0-indexed, contiguous)
        start_char: Where the window starts in the original text
        end_char: Where the window ends in the original text
        metadata: Additional metadata (document id, page, etc.)
    """
    text: str
    chunk_index: int
    start_char: int
    end_char: int
    metadata: dict = field(default_factory=dict)

    @property
    def char_count(self) -> int:
        """Return the number of characters in this chunk."""
        return len(self.text)


class TextChunker:
    """
    Splits text into overlapping, boundary-aware chunks.

    Example:
        chunker = TextChunker(chunk_size=2000, chunk_overlap=200)
        chunks = chunker.chunk_text(full_text)
        for chunk in chunks:
            print(f"Chunk {chunk.chunk_index}: {chunk.char_count} chars")
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        min_chunk_size: int = MIN_CHUNK_CHARS,
        break_markers: tuple[str, ...] = BREAK_MARKERS,
    ):
        """
        Initialize the chunker with size parameters.

        Args:
            chunk_size: Window size in characters
            chunk_overlap: Characters to step back when starting the next window
            min_chunk_size: Chunks shorter than this are discarded
            break_markers: Boundary strings in priority order

        Raises:
            ValueError: If overlap is not smaller than half the chunk size
        """
        if chunk_size < 2:
            raise ValueError("Chunk size must be at least 2 characters")
        if chunk_overlap < 0:
            raise ValueError("Overlap cannot be negative")
        # A window is at least chunk_size / 2 long, so this keeps every step forward
        if chunk_overlap >= chunk_size // 2:
            raise ValueError("Overlap must be less than half the chunk size")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.min_chunk_size = min_chunk_size
        self.break_markers = break_markers

    def _find_split_point(self, text: str, start: int, end: int) -> int:
        """
        Find where to cut the window [start, end).

        Markers are tried in priority order; the first one whose last
        occurrence in the window lies past the midpoint wins, and the cut is
        made just after it.

        Returns:
            The cut position (end itself if no marker qualifies)
        """
        midpoint = start + self.chunk_size // 2
        for marker in self.break_markers:
            idx = text.rfind(marker, start, end)
            if idx > midpoint:
                return idx + len(marker)
        return end

    def chunk_text(self, text: str, metadata: dict | None = None) -> list[TextChunk]:
        """
        Split text into overlapping chunks.

        Offsets refer to `text` exactly as given, so text[start_char:end_char]
        is the untrimmed window for every chunk.

        Args:
            text: The text to chunk
            metadata: Optional metadata to attach to all chunks

        Returns:
            List of TextChunk objects; empty for empty input
        """
        if not text or not text.strip():
            return []

        metadata = metadata or {}
        length = len(text)
        windows: list[tuple[int, int]] = []
        start = 0

        while start < length:
            end = start + self.chunk_size
            if end < length:
                end = self._find_split_point(text, start, end)
            else:
                end = length

            windows.append((start, end))

            next_start = end - self.chunk_overlap
            # The remaining tail is already inside this window's overlap
            if next_start >= length - self.chunk_overlap:
                break
            # Safety: ensure we're making progress
            start = next_start if next_start > start else end

        chunks = []
        for window_start, window_end in windows:
            chunk_text = text[window_start:window_end].strip()
            if len(chunk_text) < self.min_chunk_size:
                continue
            chunks.append(TextChunk(
                text=chunk_text,
                chunk_index=len(chunks),
                start_char=window_start,
                end_char=window_end,
                metadata=metadata.copy(),
            ))

        return chunks


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def chunk_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    chunk_overlap: int = CHUNK_OVERLAP,
) -> list[str]:
    """
    Simple function to chunk text and return just the text strings.

    Example:
        chunks = chunk_text(book_text)
        print(f"Created {len(chunks)} chunks")
    """
    chunker = TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    return [chunk.text for chunk in chunker.chunk_text(text)]


def estimate_chunks(
    text_length: int,
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> int:
    """
    Upper-bound estimate of the number of windows for text of a given length.

    Every window but the last advances by at least chunk_size / 2 - overlap.
    """
    if text_length <= chunk_size:
        return 1
    min_step = chunk_size // 2 - overlap
    return (text_length - overlap) // min_step + 1


# =============================================================================
# MAIN - For testing
# =============================================================================

if __name__ == "__main__":
    """
    Chunk a short bilingual sample and show the windows.
    Run: python -m koushole.ingestion.chunker
    """
    print("=" * 60)
    print("TEXT CHUNKER TEST")
    print("=" * 60)

    sample_text = (
        "অধ্যায় ১: সংখ্যা পরিচিতি। আমরা প্রতিদিন সংখ্যা ব্যবহার করি। " * 12
        + "\n\nChapter 2: Fractions. A fraction names part of a whole. " * 12
    )

    chunker = TextChunker(chunk_size=400, chunk_overlap=50)  # Smaller for demo
    chunks = chunker.chunk_text(sample_text, metadata={"source": "demo"})

    print(f"\nOriginal text length: {len(sample_text)} characters")
    print(f"Created {len(chunks)} chunks:")
    for chunk in chunks:
        print(f"\n[Chunk {chunk.chunk_index}] ({chunk.char_count} chars)")
        print(f"Position: chars {chunk.start_char}-{chunk.end_char}")
        print(chunk.text[:120].replace('\n', ' ') + "...")
