"""
Document Processing Package
════════════════════════════

Content side of the indexing pipeline:

  Text Extraction → Heading Chunking → Embedding

Modules
───────
  extractor.py  Picks the extraction method for a document and runs it
  chunking.py   Heading-based markdown chunker (200–500 estimated tokens)
  embeddings.py Batch embedding pipeline with retry logic

Persistence (digest status, context_chunks) lives in app.services; nothing
here touches the database.
"""

from app.processing.chunking import ChunkResult, HeadingChunker
from app.processing.embeddings import EmbeddingPipeline
from app.processing.extractor import ExtractionResult, TextExtractor, select_method

__all__ = [
    "ChunkResult",
    "HeadingChunker",
    "EmbeddingPipeline",
    "ExtractionResult",
    "TextExtractor",
    "select_method",
]
