"""
Text embeddings for candidates and concepts.

Two backends: the Ollama embedding endpoint (default) and a local
sentence-transformers model. Stored vectors may come back either as native
arrays or as JSON text; ``parse_embedding`` is the single place that turns
either form into a float vector or ``None``.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx
import numpy as np
import ollama

from ..config import Settings, settings as default_settings
from ..discovery.models import Candidate
from ..errors import ConfigurationError, ExternalCallError, ParseError

logger = logging.getLogger(__name__)

EMBED_BATCH_SIZE = 5
MAX_DESCRIPTION_CHARS = 500
MAX_EMBED_TAGS = 20


def prepare_text_for_embedding(title: str, description: str, tags: Sequence[str]) -> str:
    """Combine title, description and tags into one embedding input."""
    description = description or ""
    if len(description) > MAX_DESCRIPTION_CHARS:
        description = description[:MAX_DESCRIPTION_CHARS] + "..."
    tag_string = ", ".join(list(tags or [])[:MAX_EMBED_TAGS])
    return f"Title: {title or ''}\nDescription: {description}\nTags: {tag_string}"


def parse_embedding(raw: Any) -> Optional[np.ndarray]:
    """Normalize a stored embedding into a 1-D float vector.

    Returns None when the embedding is absent (None, empty string, empty
    array). Raises ParseError when it is present but unusable.
    """
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Embedding is not valid JSON: {e}") from e
    if not isinstance(raw, (list, tuple, np.ndarray)):
        raise ParseError(f"Unsupported embedding type: {type(raw).__name__}")

    try:
        vector = np.asarray(raw, dtype=float)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Embedding contains non-numeric values: {e}") from e

    if vector.ndim != 1:
        raise ParseError(f"Embedding must be one-dimensional, got shape {vector.shape}")
    if vector.size == 0:
        return None
    if not np.all(np.isfinite(vector)):
        raise ParseError("Embedding contains non-finite values")
    return vector


def load_embedding(raw: Any) -> Optional[list[float]]:
    """Parse a persisted embedding, treating malformed values as absent."""
    try:
        vector = parse_embedding(raw)
    except ParseError as e:
        logger.warning("Discarding malformed stored embedding: %s", e)
        return None
    return None if vector is None else vector.tolist()


class Embedder(ABC):
    """Turns a batch of texts into vectors of a fixed dimensionality."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self.embed([text])
        if not vectors:
            raise ExternalCallError("Embedding provider returned no vector", service="embeddings")
        return vectors[0]


class OllamaEmbedder(Embedder):
    """Embeddings from an Ollama server."""

    def __init__(
        self,
        model: str = "nomic-embed-text",
        host: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.model = model
        self._client = client or ollama.AsyncClient(host=host)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            response = await self._client.embed(model=self.model, input=texts)
        except ollama.ResponseError as e:
            raise ExternalCallError(
                f"Ollama embed failed: {e.error}",
                service="ollama",
                status_code=e.status_code,
            ) from e
        except (httpx.HTTPError, ConnectionError) as e:
            raise ExternalCallError(
                f"Cannot reach Ollama for embeddings: {e}", service="ollama"
            ) from e

        vectors = [list(v) for v in response.embeddings]
        if len(vectors) != len(texts):
            raise ExternalCallError(
                f"Ollama returned {len(vectors)} embeddings for {len(texts)} texts",
                service="ollama",
            )
        return vectors


class SentenceTransformerEmbedder(Embedder):
    """Local embeddings with sentence-transformers (loaded on first use)."""

    def __init__(self, model_name: str = "paraphrase-multilingual-MiniLM-L12-v2"):
        self.model_name = model_name
        self._model = None

    def _get_model(self):
        if self._model is None:
            # Lazy import: torch is heavy and only needed for this backend
            from sentence_transformers import SentenceTransformer
            logger.info("Loading sentence-transformers model %s", self.model_name)
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _encode(self, texts: list[str]) -> list[list[float]]:
        model = self._get_model()
        encoded = model.encode(texts, show_progress_bar=False)
        return np.asarray(encoded, dtype=float).tolist()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)


def build_embedder(
    config: Optional[Settings] = None,
    backend: Optional[str] = None,
    model: Optional[str] = None,
) -> Embedder:
    """Create the configured embedding backend."""
    config = config or default_settings
    backend = backend or config.EMBEDDING_BACKEND
    if backend == "ollama":
        return OllamaEmbedder(model=model or config.EMBEDDING_MODEL, host=config.OLLAMA_HOST)
    if backend == "sentence-transformers":
        return SentenceTransformerEmbedder(model or config.SENTENCE_TRANSFORMER_MODEL)
    raise ConfigurationError(f"Unknown embedding backend: {backend}")


def candidate_text(candidate: Candidate) -> str:
    return prepare_text_for_embedding(
        candidate.title, candidate.description, candidate.tags
    )


async def embed_candidates(
    embedder: Embedder,
    candidates: list[Candidate],
    batch_size: int = EMBED_BATCH_SIZE,
    force: bool = False,
    on_batch: Optional[Callable[[list[Candidate]], Awaitable[None]]] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> list[Candidate]:
    """Attach embeddings to candidates in small sequential batches.

    Only candidates without an embedding are processed unless ``force`` is
    set. ``on_batch`` is awaited after every batch with the freshly
    embedded candidates so progress survives a later failure.

    Returns:
        The full candidate list in input order, with new embeddings applied.
    """
    if force:
        pending = list(candidates)
    else:
        pending = [c for c in candidates if not c.has_embedding]
    total = len(pending)
    if total == 0:
        logger.info("All %d candidates already have embeddings", len(candidates))
        return list(candidates)

    updated: dict[str, Candidate] = {}
    batches = (total + batch_size - 1) // batch_size
    for number, start in enumerate(range(0, total, batch_size), 1):
        batch = pending[start:start + batch_size]
        logger.info("Embedding batch %d of %d (%d videos)", number, batches, len(batch))
        vectors = await embedder.embed([candidate_text(c) for c in batch])
        if len(vectors) != len(batch):
            raise ExternalCallError(
                f"Expected {len(batch)} embeddings, got {len(vectors)}",
                service="embeddings",
            )

        embedded = [replace(c, embedding=list(v)) for c, v in zip(batch, vectors)]
        if on_batch:
            await on_batch(embedded)
        for c in embedded:
            updated[c.video_id] = c
        if on_progress:
            on_progress(min(start + len(batch), total), total)

    return [updated.get(c.video_id, c) for c in candidates]
