"""Construction of a configured memory store."""
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import Config, config as default_config
from .memory.embedding import EmbeddingProvider, SentenceTransformerEmbeddings
from .memory.store import HybridMemoryStore


def setup_logging(cfg: Optional[Config] = None) -> None:
    """Configure logging for the application."""
    cfg = cfg or default_config
    log_level = cfg["logging.level"]
    log_file = Path(cfg["logging.file"])

    # Ensure log directory exists
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Configure loguru
    logger.remove()  # Remove default handler
    logger.add(
        log_file,
        level=log_level,
        rotation=cfg["logging.rotation"],
        retention=cfg["logging.retention"],
        enqueue=True,
        backtrace=True,
        diagnose=cfg["app.debug"]
    )

    # Also log to console in debug mode
    if cfg["app.debug"]:
        logger.add(
            lambda msg: print(msg, end=""),
            level=log_level,
            colorize=True
        )


def build_store(
    cfg: Optional[Config] = None,
    embeddings: Optional[EmbeddingProvider] = None,
) -> HybridMemoryStore:
    """Create a store from configuration.

    Args:
        cfg: Configuration to read (defaults to the global one)
        embeddings: Provider to use; a sentence-transformers model is loaded
            from ``embedding.*`` settings when omitted

    Raises:
        ValueError: If the configuration is invalid
    """
    cfg = cfg or default_config

    issues = cfg.validate()
    if issues:
        raise ValueError("Invalid configuration: " + "; ".join(issues))

    logger.info("Initializing memory store...")

    vector_dim = cfg["memory.vector_dim"]
    if embeddings is None:
        model = SentenceTransformerEmbeddings(
            model_name=cfg["embedding.model"],
            cache_dir=cfg["embedding.cache_dir"],
            device=cfg["embedding.device"],
        )
        if model.embedding_dim != vector_dim:
            logger.warning(
                f"Configured vector dimension {vector_dim} does not match model "
                f"dimension {model.embedding_dim}; using the model's"
            )
            vector_dim = model.embedding_dim
        embeddings = model

    return HybridMemoryStore(
        db_path=cfg["memory.db_path"],
        embeddings=embeddings,
        vector_dim=vector_dim,
        dedup_threshold=cfg["memory.dedup_threshold"],
        forget_threshold=cfg["memory.forget_threshold"],
        forget_candidates=cfg["memory.forget_candidates"],
        search_limit=cfg["memory.search_limit"],
        instruction_limit=cfg["memory.instruction_limit"],
        auto_inject_instructions=cfg["memory.auto_inject_instructions"],
    )
