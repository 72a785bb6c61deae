"""Configuration settings for the memory store."""
from pathlib import Path
from typing import Dict, Any, List, Optional
import os
import json

from . import __version__


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Configuration manager for the memory store."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration.

        Args:
            config_path: Path to the configuration file
        """
        # Default configuration
        self._config = {
            "app": {
                "name": "hybrid-memory",
                "version": __version__,
                "environment": os.getenv("APP_ENV", "development"),
                "debug": _env_bool("DEBUG", "false"),
            },
            "memory": {
                "db_path": os.getenv("MEMORY_DB_PATH", "~/.hybrid-memory"),
                "vector_dim": int(os.getenv("EMBEDDING_DIM", "384")),
                "dedup_threshold": float(os.getenv("DEDUP_THRESHOLD", "0.95")),
                "forget_threshold": float(os.getenv("FORGET_THRESHOLD", "0.9")),
                "forget_candidates": int(os.getenv("FORGET_CANDIDATES", "5")),
                "search_limit": int(os.getenv("SEARCH_LIMIT", "10")),
                "instruction_limit": int(os.getenv("INSTRUCTION_LIMIT", "50")),
                "auto_inject_instructions": _env_bool("AUTO_INJECT_INSTRUCTIONS", "true"),
            },
            "embedding": {
                "model": os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
                "device": os.getenv("EMBEDDING_DEVICE"),
                "cache_dir": os.getenv("EMBEDDING_CACHE_DIR"),
            },
            "logging": {
                "level": os.getenv("LOG_LEVEL", "INFO"),
                "file": os.getenv("LOG_FILE", "hybrid_memory.log"),
                "rotation": os.getenv("LOG_ROTATION", "10 MB"),
                "retention": os.getenv("LOG_RETENTION", "30 days"),
            },
        }

        # Load from config file if provided
        if config_path and Path(config_path).exists():
            self.load(config_path)

    def load(self, config_path: str) -> None:
        """Load configuration from a JSON file.

        Args:
            config_path: Path to the configuration file
        """
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = json.load(f)
            self._deep_update(self._config, config_data)

    def _deep_update(self, original: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively update a dictionary."""
        for key, value in update.items():
            if isinstance(value, dict) and key in original and isinstance(original[key], dict):
                original[key] = self._deep_update(original[key], value)
            else:
                original[key] = value
        return original

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., 'memory.db_path')
            default: Default value if key is not found

        Returns:
            The configuration value or default
        """
        keys = key.split('.')
        value = self._config

        try:
            for k in keys:
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def __getitem__(self, key: str) -> Any:
        """Get a configuration value using bracket notation."""
        return self.get(key)

    def validate(self) -> List[str]:
        """Validate the configuration and return any issues."""
        issues = []

        for key in ("memory.dedup_threshold", "memory.forget_threshold"):
            value = self.get(key)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                issues.append(f"{key} must be between 0 and 1, got {value!r}")

        for key in ("memory.vector_dim", "memory.forget_candidates",
                    "memory.search_limit", "memory.instruction_limit"):
            value = self.get(key)
            if not isinstance(value, int) or value < 1:
                issues.append(f"{key} must be a positive integer, got {value!r}")

        if not self.get("memory.db_path"):
            issues.append("memory.db_path must be set")

        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a dictionary."""
        return self._config.copy()

# Global configuration instance
config = Config()
