"""Embeddings generation using sentence-transformers."""

import logging
import time
from functools import lru_cache
from typing import Protocol

from logrecall.errors import EmbeddingUnavailable

log = logging.getLogger(__name__)

MODEL_NAME = "all-MiniLM-L6-v2"

# Approximate character limit for MiniLM (~500 tokens)
MAX_EMBED_CHARS = 2000

RETRY_ATTEMPTS = 3
RETRY_BACKOFF = 0.5  # seconds, doubled per attempt


class Embedder(Protocol):
    """Opaque text -> vector function."""

    def embed(self, texts: list[str]) -> list[list[float]]: ...


@lru_cache(maxsize=2)
def get_model(model_name: str = MODEL_NAME):
    """Get the sentence transformer model (cached)."""
    # Lazy import to avoid loading torch for commands that never embed
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name)


class SentenceTransformerEmbedder:
    """Embedder backed by a local sentence-transformers model."""

    def __init__(self, model_name: str = MODEL_NAME) -> None:
        self.model_name = model_name

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            model = get_model(self.model_name)
        except Exception as e:
            raise EmbeddingUnavailable(f"cannot load model {self.model_name}: {e}") from e
        embeddings = model.encode(
            texts, convert_to_numpy=True, show_progress_bar=False
        )
        return [e.tolist() for e in embeddings]


def prepare_text(text: str) -> str:
    return text[:MAX_EMBED_CHARS]


def encode_text(embedder: Embedder, text: str) -> list[float]:
    """Embed a single query string, raising EmbeddingUnavailable on failure."""
    try:
        vectors = embedder.embed([prepare_text(text)])
    except EmbeddingUnavailable:
        raise
    except Exception as e:
        raise EmbeddingUnavailable(f"query embedding failed: {e}") from e
    if len(vectors) != 1:
        raise EmbeddingUnavailable("embedder returned no vector for the query")
    return vectors[0]


def encode_batch(embedder: Embedder, texts: list[str]) -> list[list[float]]:
    """Embed one batch, retrying transient failures before giving up."""
    prepared = [prepare_text(t) for t in texts]
    delay = RETRY_BACKOFF
    attempt = 1
    while True:
        try:
            return _embed_once(embedder, prepared)
        except Exception as e:
            if attempt >= RETRY_ATTEMPTS:
                raise EmbeddingUnavailable(f"embedding batch failed: {e}") from e
            log.debug("Embedding attempt %d failed (%s), retrying", attempt, e)
            time.sleep(delay)
            delay *= 2
            attempt += 1


def _embed_once(embedder: Embedder, texts: list[str]) -> list[list[float]]:
    vectors = embedder.embed(texts)
    if len(vectors) != len(texts):
        raise EmbeddingUnavailable(f"embedder returned {len(vectors)} vectors for {len(texts)} texts")
    return vectors
