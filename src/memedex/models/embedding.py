"""
Sentence embedding model wrapper.

This module provides the process-wide text embedding service used for
item processing and query encoding. The underlying model is loaded once,
on first use, and kept resident for the lifetime of the process.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, List, Optional

import numpy as np

from ..config import Settings
from ..errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

ModelLoader = Callable[[str, str], Any]


class EmbeddingModelError(UpstreamUnavailableError):
    """Embedding model related errors."""


def _determine_device(device: str) -> str:
    """Determine the appropriate device for model inference."""
    if device != "auto":
        return device

    import torch

    if torch.cuda.is_available():
        logger.info("Using CUDA device for embedding model")
        return "cuda"
    logger.info("Using CPU device for embedding model")
    return "cpu"


def load_sentence_transformer(model_name: str, device: str) -> Any:
    """Load a sentence-transformers model."""
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name, device=_determine_device(device))


class EmbeddingModel:
    """
    Lazily loaded sentence embedding model.

    One instance is shared by every caller in the process. The first call
    to ``embed`` loads the model; concurrent callers block on the same
    lock and reuse the loaded model instead of loading it again.
    """

    def __init__(self, settings: Settings, loader: Optional[ModelLoader] = None):
        """
        Initialize embedding model service.

        Args:
            settings: Application settings containing model configuration
            loader: Callable ``(model_name, device) -> model``; the model
                must provide ``encode(text, normalize_embeddings=True)``
        """
        assert settings is not None, "Settings object is required"

        self.settings = settings
        self.model_name = settings.embedding_model_name
        self.dimension = settings.embedding_dimension
        self._loader = loader or load_sentence_transformer
        self._model: Any = None
        self._lock = threading.Lock()
        self.load_count = 0

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _get_model(self) -> Any:
        """Return the resident model, loading it on first use."""
        model = self._model
        if model is not None:
            return model

        with self._lock:
            if self._model is None:
                try:
                    logger.info(f"Loading embedding model: {self.model_name}")
                    self._model = self._loader(self.model_name, self.settings.device)
                    self.load_count += 1
                    logger.info("Embedding model loaded")
                except Exception as e:
                    error_msg = f"Failed to load embedding model: {e}"
                    logger.error(error_msg)
                    raise EmbeddingModelError(error_msg) from e
            return self._model

    def encode_text(self, text: str) -> List[float]:
        """
        Encode text to a normalized embedding (blocking).

        Args:
            text: Text string to encode

        Returns:
            Unit-length embedding vector

        Raises:
            EmbeddingModelError: If loading or encoding fails
        """
        assert text is not None, "Text input is required"
        assert len(text.strip()) > 0, "Text cannot be empty"

        model = self._get_model()
        try:
            raw = model.encode(text, normalize_embeddings=True)
        except Exception as e:
            error_msg = f"Failed to encode text: {e}"
            logger.error(error_msg)
            raise EmbeddingModelError(error_msg) from e

        vector = np.asarray(raw, dtype=np.float32).flatten()
        if vector.shape[0] != self.dimension:
            raise EmbeddingModelError(
                f"Embedding dimension mismatch: expected {self.dimension}, "
                f"got {vector.shape[0]}"
            )

        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector = vector / norm

        logger.debug(f"Generated text embedding with shape: {vector.shape}")
        return vector.tolist()

    async def embed(self, text: str) -> List[float]:
        """Encode text without blocking the event loop."""
        return await asyncio.to_thread(self.encode_text, text)

    async def warm_up(self) -> bool:
        """
        Load the model ahead of the first request.

        Failures are logged and swallowed; the next ``embed`` call retries
        the load.
        """
        try:
            await asyncio.to_thread(self._get_model)
            return True
        except EmbeddingModelError as e:
            logger.warning(f"Embedding model warm-up failed: {e}")
            return False

    def get_model_info(self) -> dict:
        """
        Get information about the model.

        Returns:
            Dictionary containing model information
        """
        return {
            "model_name": self.model_name,
            "device": self.settings.device,
            "embedding_dim": self.dimension,
            "is_loaded": self.is_loaded,
        }
