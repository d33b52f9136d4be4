"""Text chunking for documents and video transcripts.

Document text is split with a token-aware recursive splitter. Transcripts are
grouped sentence by sentence so each chunk stays a coherent stretch of speech.
All chunking is deterministic: same input + config -> same chunks.
"""

import re
from dataclasses import dataclass
from typing import Protocol

import tiktoken
from langchain_text_splitters import RecursiveCharacterTextSplitter

from tutor_context.models import TranscriptSegment

# Latin and CJK full-width sentence terminators
SENTENCE_BOUNDARY = re.compile(r"[.!?。！？]+")


@dataclass(frozen=True)
class ChunkingConfig:
    """Configuration for text chunking.

    Attributes:
        chunk_size: Target document chunk size in tokens
        overlap: Number of overlapping tokens between document chunks
        tokenizer: Tokenizer name (tiktoken encoding, e.g., "cl100k_base")
        preserve_boundaries: If True, prefer paragraph and sentence boundaries
        sentences_per_chunk: Transcript sentences grouped into one chunk
    """

    chunk_size: int = 400
    overlap: int = 50
    tokenizer: str = "cl100k_base"
    preserve_boundaries: bool = True
    sentences_per_chunk: int = 10

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.overlap < 0:
            raise ValueError(f"overlap must be non-negative, got {self.overlap}")
        if self.overlap >= self.chunk_size:
            raise ValueError(
                f"overlap ({self.overlap}) must be less than chunk_size ({self.chunk_size})"
            )
        if self.sentences_per_chunk <= 0:
            raise ValueError(
                f"sentences_per_chunk must be positive, got {self.sentences_per_chunk}"
            )


class Chunker(Protocol):
    """Protocol for document chunking implementations."""

    def chunk(self, text: str) -> list[str]:
        """Split text into ordered chunks."""
        ...


class RecursiveTokenChunker:
    """Token-aware recursive text chunker for extracted document text.

    Uses langchain's RecursiveCharacterTextSplitter with tiktoken for accurate
    token counting.
    """

    def __init__(self, config: ChunkingConfig):
        self.config = config
        self.encoding = tiktoken.get_encoding(config.tokenizer)

        self.splitter = RecursiveCharacterTextSplitter(
            chunk_size=config.chunk_size,
            chunk_overlap=config.overlap,
            length_function=self._count_tokens,
            separators=["\n\n", "\n", ". ", " ", ""] if config.preserve_boundaries else None,
        )

    def _count_tokens(self, text: str) -> int:
        return len(self.encoding.encode(text, disallowed_special=()))

    def chunk(self, text: str) -> list[str]:
        """Split document text into chunks.

        Args:
            text: Extracted document text

        Returns:
            Non-empty chunk strings in document order. Empty or whitespace-only
            input yields an empty list.
        """
        if not text or not text.strip():
            return []
        return [piece for piece in self.splitter.split_text(text) if piece.strip()]


def split_sentences(transcript: str) -> list[str]:
    """Split transcript text on sentence terminators, dropping empty pieces.

    Example:
        >>> split_sentences("Xin chào. Hôm nay học hàm số! Bắt đầu nhé?")
        ['Xin chào', 'Hôm nay học hàm số', 'Bắt đầu nhé']
    """
    return [piece.strip() for piece in SENTENCE_BOUNDARY.split(transcript) if piece.strip()]


class TranscriptChunker:
    """Groups transcript sentences into fixed-size chunks.

    Example:
        >>> chunker = TranscriptChunker(ChunkingConfig(sentences_per_chunk=2))
        >>> [s.text for s in chunker.chunk("A. B. C.")]
        ['A. B.', 'C.']
    """

    def __init__(self, config: ChunkingConfig | None = None):
        self.config = config or ChunkingConfig()

    def chunk(self, transcript: str) -> list[TranscriptSegment]:
        """Split a transcript into segments numbered from 0.

        Args:
            transcript: Full transcript text

        Returns:
            Ordered transcript segments; empty for blank transcripts
        """
        if not transcript or not transcript.strip():
            return []

        sentences = split_sentences(transcript)
        size = self.config.sentences_per_chunk

        segments: list[TranscriptSegment] = []
        for start in range(0, len(sentences), size):
            text = ". ".join(sentences[start : start + size]).strip()
            if not text:
                continue
            if not text.endswith("."):
                text += "."
            segments.append(TranscriptSegment(text=text, sequence_id=len(segments)))

        return segments
