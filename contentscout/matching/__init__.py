# Matching module
from .embeddings import (
    Embedder,
    OllamaEmbedder,
    SentenceTransformerEmbedder,
    build_embedder,
    embed_candidates,
    parse_embedding,
    prepare_text_for_embedding,
)
from .matcher import EmbeddingMatcher, MatchResult, cosine_similarity
