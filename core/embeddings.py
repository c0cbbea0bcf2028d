"""
Keepsake - Embeddings Module
Lazy-loaded sentence transformers for memory similarity
"""

import threading
from typing import Optional, List
import numpy as np

from core.logger import log_info, log_error, log_success

# Global model instance
_model = None
_model_lock = threading.Lock()
_model_name: str = ""
_embedding_dimensions: int = 0


def load_embedding_model(model_name: str = "all-MiniLM-L6-v2") -> bool:
    """
    Load the embedding model. This is lazy-loaded to avoid startup delays.

    Args:
        model_name: Name of the sentence-transformers model to load

    Returns:
        True if successful, False otherwise
    """
    global _model, _model_name, _embedding_dimensions

    with _model_lock:
        if _model is not None:
            return True

        try:
            log_info(f"Loading embedding model ({model_name})...", prefix="📦")

            # Lazy import to avoid startup delay
            from sentence_transformers import SentenceTransformer

            _model = SentenceTransformer(model_name)
            _model_name = model_name

            test_embedding = _model.encode("test", convert_to_numpy=True)
            _embedding_dimensions = len(test_embedding)

            log_success(f"Embedding model loaded ({_embedding_dimensions} dimensions)")
            return True

        except Exception as e:
            log_error(f"Failed to load embedding model: {e}")
            return False


def get_embedding(text: str) -> Optional[np.ndarray]:
    """
    Get the embedding vector for a text string.

    Returns:
        numpy array of the embedding, or None if model not loaded
    """
    with _model_lock:
        if _model is None:
            return None

        try:
            embedding = _model.encode(text, convert_to_numpy=True)
            return embedding.astype(np.float32)
        except Exception as e:
            log_error(f"Failed to generate embedding: {e}")
            return None


def get_embeddings_batch(texts: List[str]) -> Optional[np.ndarray]:
    """
    Get embedding vectors for multiple texts (more efficient than individual calls).

    Returns:
        numpy array of shape (len(texts), embedding_dim), or None if failed
    """
    with _model_lock:
        if _model is None:
            return None

        if not texts:
            return np.array([])

        try:
            embeddings = _model.encode(texts, convert_to_numpy=True)
            return embeddings.astype(np.float32)
        except Exception as e:
            log_error(f"Failed to generate batch embeddings: {e}")
            return None


def cosine_similarity_batch(query_vec: np.ndarray, vectors: np.ndarray) -> np.ndarray:
    """
    Calculate cosine similarity between a query vector and multiple vectors.

    Args:
        query_vec: Query embedding vector (1D)
        vectors: Matrix of vectors to compare against (2D: n_vectors x embedding_dim)

    Returns:
        Array of similarity scores
    """
    if len(vectors) == 0:
        return np.array([])

    query_norm = np.linalg.norm(query_vec)
    if query_norm == 0:
        return np.zeros(len(vectors))
    query_normalized = query_vec / query_norm

    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1  # Avoid division by zero
    vectors_normalized = vectors / norms

    return np.dot(vectors_normalized, query_normalized)


def embedding_to_bytes(embedding: np.ndarray) -> bytes:
    """Convert embedding numpy array to bytes for database storage."""
    return embedding.astype(np.float32).tobytes()


def bytes_to_embedding(data: bytes) -> np.ndarray:
    """Convert bytes from database back to numpy array."""
    return np.frombuffer(data, dtype=np.float32)


def is_model_loaded() -> bool:
    """Check if the embedding model is loaded."""
    with _model_lock:
        return _model is not None


def get_model_info() -> dict:
    """Get information about the loaded model."""
    with _model_lock:
        return {
            "loaded": _model is not None,
            "model_name": _model_name,
            "dimensions": _embedding_dimensions
        }
