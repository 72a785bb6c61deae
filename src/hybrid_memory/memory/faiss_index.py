"""
FAISS (Facebook AI Similarity Search) index holding one vector per live memory.
"""
import os
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import faiss
import numpy as np
from loguru import logger

from .errors import StorageError

VECTOR_TABLE = "memory_vectors"


@dataclass
class VectorEntry:
    """A stored vector and the text it was computed from."""
    id: str
    vector: List[float]
    text: str


@dataclass
class VectorHit:
    """A nearest-neighbour match."""
    id: str
    distance: float
    text: str
    rank: int


class FAISSIndex:
    """
    Vector collection keyed by memory id, backed by an exact L2 FAISS index.

    FAISS only understands int64 ids, so every memory id is mapped to an
    internal integer. The mapping and the raw text of each entry live in a JSON
    sidecar next to the ``.faiss`` file; both are rewritten after every mutation.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        embedding_dim: int,
        name: str = VECTOR_TABLE,
    ):
        """Initialize the FAISS index.

        Args:
            directory: Directory holding the collection files
            embedding_dim: Dimension of the embeddings
            name: Collection name, used as the file stem
        """
        if embedding_dim <= 0:
            raise ValueError("embedding_dim must be positive")

        self.directory = Path(directory)
        self.embedding_dim = embedding_dim
        self.name = name

        self.index = None
        self.id_to_idx: Dict[str, int] = {}  # Map memory ID to FAISS id
        self.idx_to_id: Dict[int, str] = {}  # Map FAISS id to memory ID
        self.texts: Dict[str, str] = {}
        self.next_idx = 0

    @property
    def index_file(self) -> Path:
        return self.directory / f"{self.name}.faiss"

    @property
    def mapping_file(self) -> Path:
        return self.directory / f"{self.name}.json"

    @property
    def is_open(self) -> bool:
        return self.index is not None

    def _init_index(self) -> None:
        """Initialize a new, empty FAISS index."""
        # IndexIDMap2 keeps vectors reconstructible by id
        self.index = faiss.IndexIDMap2(faiss.IndexFlatL2(self.embedding_dim))
        self.id_to_idx = {}
        self.idx_to_id = {}
        self.texts = {}
        self.next_idx = 0

    def open(self) -> None:
        """Load the collection from disk, or create it if it does not exist."""
        if self.is_open:
            return

        self.directory.mkdir(parents=True, exist_ok=True)

        if not self.index_file.exists():
            self._init_index()
            self.save()
            logger.info(f"Created vector collection {self.name} at {self.directory}")
            return

        try:
            index = faiss.read_index(str(self.index_file))
            with open(self.mapping_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, RuntimeError, ValueError) as e:
            logger.error(f"Failed to load vector collection {self.name}: {e}")
            raise StorageError(f"Failed to load vector collection {self.name}: {e}") from e

        if data.get('embedding_dim') != self.embedding_dim or index.d != self.embedding_dim:
            raise StorageError(
                f"Vector collection {self.name} has dimension {index.d}, "
                f"expected {self.embedding_dim}"
            )

        self.index = index
        self.next_idx = data['next_idx']
        self.id_to_idx = {}
        self.texts = {}
        for memory_id, entry in data['entries'].items():
            self.id_to_idx[memory_id] = int(entry['idx'])
            self.texts[memory_id] = entry['text']
        self.idx_to_id = {v: k for k, v in self.id_to_idx.items()}

        logger.info(f"Loaded vector collection {self.name} with {self.index.ntotal} vectors")

    def _require_open(self) -> None:
        if not self.is_open:
            raise StorageError(f"Vector collection {self.name} is not open")

    def _as_array(self, vector: Sequence[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        if array.shape[1] != self.embedding_dim:
            raise ValueError(
                f"Vector dimension {array.shape[1]} does not match expected dimension {self.embedding_dim}"
            )
        return array

    def _save_or_revert(self, revert: Callable[[], None]) -> None:
        """Persist a mutation, undoing it in memory if the files cannot be written."""
        try:
            self.save()
        except StorageError:
            revert()
            raise

    def _put(self, idx: int, array: np.ndarray) -> None:
        self.index.add_with_ids(array, np.array([idx], dtype=np.int64))

    def _drop(self, idx: int) -> None:
        self.index.remove_ids(np.array([idx], dtype=np.int64))

    def add(self, memory_id: str, vector: Sequence[float], text: str) -> None:
        """Add a single entry.

        Raises:
            ValueError: If the id already exists or the dimension is wrong
            StorageError: If the index cannot be written; nothing is added
        """
        self._require_open()
        if memory_id in self.id_to_idx:
            raise ValueError(f"Vector entry {memory_id} already exists")

        array = self._as_array(vector)
        idx = self.next_idx
        try:
            self._put(idx, array)
        except RuntimeError as e:
            raise StorageError(f"Failed to add vector {memory_id}: {e}") from e

        self.id_to_idx[memory_id] = idx
        self.idx_to_id[idx] = memory_id
        self.texts[memory_id] = text
        self.next_idx += 1

        def revert():
            self._drop(idx)
            del self.id_to_idx[memory_id]
            del self.idx_to_id[idx]
            del self.texts[memory_id]
            self.next_idx = idx

        self._save_or_revert(revert)

    def update(self, memory_id: str, vector: Sequence[float], text: str) -> None:
        """Overwrite the vector and text of an existing entry, keeping its id.

        Raises:
            KeyError: If there is no entry for ``memory_id``
            StorageError: If the index cannot be written; the entry is unchanged
        """
        self._require_open()
        if memory_id not in self.id_to_idx:
            raise KeyError(memory_id)

        array = self._as_array(vector)
        idx = self.id_to_idx[memory_id]
        previous = self.index.reconstruct(idx).reshape(1, -1)
        previous_text = self.texts[memory_id]
        try:
            self._drop(idx)
            self._put(idx, array)
        except RuntimeError as e:
            raise StorageError(f"Failed to update vector {memory_id}: {e}") from e

        self.texts[memory_id] = text

        def revert():
            self._drop(idx)
            self._put(idx, previous)
            self.texts[memory_id] = previous_text

        self._save_or_revert(revert)

    def get(self, memory_id: str) -> Optional[VectorEntry]:
        """Return the stored entry for ``memory_id``, if any."""
        self._require_open()
        idx = self.id_to_idx.get(memory_id)
        if idx is None:
            return None
        vector = self.index.reconstruct(idx)
        return VectorEntry(id=memory_id, vector=vector.tolist(), text=self.texts[memory_id])

    def delete(self, memory_id: str) -> bool:
        """Remove an entry. Returns False if it did not exist.

        Raises:
            StorageError: If the index cannot be written; the entry is kept
        """
        self._require_open()
        idx = self.id_to_idx.get(memory_id)
        if idx is None:
            return False

        previous = self.index.reconstruct(idx).reshape(1, -1)
        text = self.texts[memory_id]
        try:
            self._drop(idx)
        except RuntimeError as e:
            raise StorageError(f"Failed to remove vector {memory_id}: {e}") from e

        del self.id_to_idx[memory_id]
        del self.idx_to_id[idx]
        del self.texts[memory_id]

        def revert():
            self._put(idx, previous)
            self.id_to_idx[memory_id] = idx
            self.idx_to_id[idx] = memory_id
            self.texts[memory_id] = text

        self._save_or_revert(revert)
        return True

    def search(self, query_vector: Sequence[float], k: int = 5) -> List[VectorHit]:
        """Find the ``k`` nearest entries, closest first.

        Distances are the squared L2 distances reported by FAISS.
        """
        self._require_open()
        if k <= 0 or self.index.ntotal == 0:
            return []

        query = self._as_array(query_vector)
        distances, indices = self.index.search(query, min(k, self.index.ntotal))

        results = []
        for idx, distance in zip(indices[0], distances[0]):
            if idx < 0:  # Skip invalid indices
                continue

            memory_id = self.idx_to_id.get(int(idx))
            if memory_id is None:
                continue
            results.append(VectorHit(
                id=memory_id,
                distance=float(distance),
                text=self.texts[memory_id],
                rank=len(results),
            ))

        return results

    def ids(self) -> List[str]:
        """All memory ids currently in the collection."""
        return list(self.id_to_idx)

    def save(self) -> None:
        """Write the index and mappings to disk, replacing the previous files."""
        self._require_open()
        tmp_index = self.index_file.with_suffix(".faiss.tmp")
        tmp_mapping = self.mapping_file.with_suffix(".json.tmp")

        try:
            faiss.write_index(self.index, str(tmp_index))
            with open(tmp_mapping, 'w', encoding='utf-8') as f:
                json.dump({
                    'embedding_dim': self.embedding_dim,
                    'next_idx': self.next_idx,
                    'entries': {
                        memory_id: {'idx': idx, 'text': self.texts[memory_id]}
                        for memory_id, idx in self.id_to_idx.items()
                    },
                }, f, ensure_ascii=False)
            os.replace(tmp_index, self.index_file)
            os.replace(tmp_mapping, self.mapping_file)
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to save vector collection {self.name}: {e}")
            raise StorageError(f"Failed to save vector collection {self.name}: {e}") from e

    def close(self) -> None:
        """Drop the in-memory index. The files on disk stay current."""
        self.index = None
        self.id_to_idx = {}
        self.idx_to_id = {}
        self.texts = {}

    def __contains__(self, memory_id: str) -> bool:
        return memory_id in self.id_to_idx

    def __len__(self) -> int:
        """Get the number of vectors in the index."""
        return self.index.ntotal if self.index is not None else 0
