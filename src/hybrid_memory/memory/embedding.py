"""Embedding providers used by the memory store."""
import asyncio
import os
from functools import partial
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from loguru import logger

from .errors import EmbeddingProviderError

# Try to import sentence_transformers, but make it optional
try:
    from sentence_transformers import SentenceTransformer
    SENTENCE_TRANSFORMERS_AVAILABLE = True
except ImportError:
    SENTENCE_TRANSFORMERS_AVAILABLE = False


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Capability the store needs to turn text into vectors.

    Implementations must return vectors of one fixed dimension and raise
    :class:`EmbeddingProviderError` on failure.
    """

    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class SentenceTransformerEmbeddings:
    """Local embedding provider backed by a sentence-transformers model."""

    # Default model configuration
    DEFAULT_MODEL_NAME = "all-MiniLM-L6-v2"  # Small but effective model
    DEFAULT_EMBEDDING_DIM = 384  # Dimension of the embeddings

    def __init__(
        self,
        model_name: Optional[str] = None,
        cache_dir: Optional[str] = None,
        device: Optional[str] = None,
        batch_size: int = 32,
    ):
        """Initialize the embedding model.

        Args:
            model_name: Name of the sentence-transformers model
            cache_dir: Directory to cache the model
            device: Device to run the model on ('cpu', 'cuda', etc.)
            batch_size: Batch size for encoding
        """
        if not SENTENCE_TRANSFORMERS_AVAILABLE:
            raise ImportError(
                "sentence-transformers is required for embedding generation. "
                "Install with: pip install 'hybrid-memory[embeddings]'"
            )

        self.model_name = model_name or self.DEFAULT_MODEL_NAME
        self.cache_dir = cache_dir
        self.device = device or ("cuda" if os.environ.get("CUDA_VISIBLE_DEVICES") else "cpu")
        self.batch_size = batch_size

        self._model = None
        self._embedding_dim = None

        self._load_model()

    def _load_model(self) -> None:
        """Load the sentence-transformers model."""
        try:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(
                self.model_name,
                cache_folder=self.cache_dir,
                device=self.device
            )

            # Get the embedding dimension
            test_embedding = self._model.encode("test", convert_to_numpy=True)
            self._embedding_dim = int(test_embedding.shape[0])

            logger.info(f"Loaded embedding model with dimension {self._embedding_dim}")

        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise EmbeddingProviderError(f"Failed to load embedding model {self.model_name}: {e}") from e

    @property
    def embedding_dim(self) -> int:
        """Get the dimension of the embeddings."""
        if self._embedding_dim is None:
            raise RuntimeError("Model not properly initialized")
        return self._embedding_dim

    def _encode(self, texts: List[str]) -> List[List[float]]:
        try:
            embeddings = self._model.encode(
                texts,
                batch_size=self.batch_size,
                show_progress_bar=len(texts) > 10,
                convert_to_numpy=True,
            )
        except Exception as e:
            logger.error(f"Failed to encode texts: {e}")
            raise EmbeddingProviderError(f"Failed to encode {len(texts)} text(s): {e}") from e

        return embeddings.tolist()

    async def embed(self, text: str) -> List[float]:
        """Encode a single text into an embedding."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Encode texts into embeddings, preserving order."""
        texts = list(texts)
        if not texts:
            return []

        # Run the blocking model call in a separate thread
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._encode, texts))
