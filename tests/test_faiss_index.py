"""
Tests for the FAISS vector collection.
"""
import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from hybrid_memory.memory.errors import StorageError
from hybrid_memory.memory.faiss_index import FAISSIndex, VectorEntry, VECTOR_TABLE


def unit(dim, i, scale=1.0):
    vector = [0.0] * dim
    vector[i] = scale
    return vector


class TestFAISSIndex(unittest.TestCase):

    def setUp(self):
        self.dir = Path(tempfile.mkdtemp(prefix="faiss-index-test-"))
        self.index = FAISSIndex(self.dir, embedding_dim=4)
        self.index.open()

    def tearDown(self):
        self.index.close()
        shutil.rmtree(self.dir, ignore_errors=True)

    def test_open_creates_collection_files(self):
        self.assertTrue((self.dir / f"{VECTOR_TABLE}.faiss").exists())
        self.assertTrue((self.dir / f"{VECTOR_TABLE}.json").exists())
        self.assertEqual(len(self.index), 0)

    def test_search_orders_by_distance(self):
        self.index.add("a", unit(4, 0), "alpha")
        self.index.add("b", unit(4, 1), "beta")
        self.index.add("c", unit(4, 0, 2.0), "gamma")

        hits = self.index.search(unit(4, 0), k=3)

        self.assertEqual([h.id for h in hits], ["a", "c", "b"])
        self.assertEqual([h.rank for h in hits], [0, 1, 2])
        self.assertAlmostEqual(hits[0].distance, 0.0)
        # FAISS reports squared L2 distances
        self.assertAlmostEqual(hits[1].distance, 1.0)
        self.assertAlmostEqual(hits[2].distance, 2.0)
        self.assertEqual(hits[0].text, "alpha")

    def test_search_caps_k_to_size(self):
        self.index.add("a", unit(4, 0), "alpha")

        self.assertEqual(len(self.index.search(unit(4, 0), k=10)), 1)
        self.assertEqual(self.index.search(unit(4, 0), k=0), [])

    def test_search_empty_index(self):
        self.assertEqual(self.index.search(unit(4, 0)), [])

    def test_update_replaces_vector_and_text(self):
        self.index.add("a", unit(4, 0), "alpha")
        self.index.add("b", unit(4, 1), "beta")

        self.index.update("a", unit(4, 2), "alpha v2")

        self.assertEqual(len(self.index), 2)
        entry = self.index.get("a")
        self.assertEqual(entry.text, "alpha v2")
        self.assertEqual(entry.vector, unit(4, 2))
        self.assertEqual(self.index.search(unit(4, 2), k=1)[0].id, "a")

    def test_update_missing_raises(self):
        with self.assertRaises(KeyError):
            self.index.update("nope", unit(4, 0), "x")

    def test_delete(self):
        self.index.add("a", unit(4, 0), "alpha")

        self.assertTrue(self.index.delete("a"))
        self.assertFalse(self.index.delete("a"))
        self.assertNotIn("a", self.index)
        self.assertIsNone(self.index.get("a"))
        self.assertEqual(self.index.search(unit(4, 0)), [])

    def test_rejects_duplicate_ids_and_wrong_dimension(self):
        self.index.add("a", unit(4, 0), "alpha")

        with self.assertRaises(ValueError):
            self.index.add("a", unit(4, 1), "again")
        with self.assertRaises(ValueError):
            self.index.add("b", [1.0, 2.0], "short")

    def test_reload_from_disk(self):
        self.index.add("a", unit(4, 0), "alpha")
        self.index.add("b", unit(4, 1), "beta")
        self.index.delete("a")
        self.index.close()

        reopened = FAISSIndex(self.dir, embedding_dim=4)
        reopened.open()

        self.assertEqual(reopened.ids(), ["b"])
        self.assertEqual(reopened.get("b").text, "beta")
        reopened.add("c", unit(4, 2), "gamma")
        self.assertEqual(reopened.search(unit(4, 2), k=1)[0].id, "c")
        self.index = reopened

    def test_dimension_mismatch_on_load(self):
        self.index.close()

        with self.assertRaises(StorageError):
            FAISSIndex(self.dir, embedding_dim=8).open()

    def test_corrupt_mapping_raises_storage_error(self):
        self.index.close()
        (self.dir / f"{VECTOR_TABLE}.json").write_text("{not json", encoding="utf-8")

        with self.assertRaises(StorageError):
            FAISSIndex(self.dir, embedding_dim=4).open()

    def test_mapping_file_contents(self):
        self.index.add("a", unit(4, 0), "alpha")

        data = json.loads((self.dir / f"{VECTOR_TABLE}.json").read_text(encoding="utf-8"))

        self.assertEqual(data["embedding_dim"], 4)
        self.assertEqual(data["next_idx"], 1)
        self.assertEqual(data["entries"], {"a": {"idx": 0, "text": "alpha"}})

    def test_failed_save_leaves_entries_unchanged(self):
        self.index.add("a", unit(4, 0), "alpha")

        with patch.object(self.index, "save", side_effect=StorageError("disk full")):
            with self.assertRaises(StorageError):
                self.index.add("b", unit(4, 1), "beta")
            with self.assertRaises(StorageError):
                self.index.update("a", unit(4, 2), "alpha v2")
            with self.assertRaises(StorageError):
                self.index.delete("a")

        self.assertEqual(self.index.ids(), ["a"])
        self.assertEqual(len(self.index), 1)
        self.assertEqual(self.index.next_idx, 1)
        self.assertEqual(self.index.get("a"), VectorEntry("a", unit(4, 0), "alpha"))
        self.assertEqual(self.index.search(unit(4, 0), k=1)[0].id, "a")

        self.index.add("b", unit(4, 1), "beta")
        self.index.close()
        reopened = FAISSIndex(self.dir, embedding_dim=4)
        reopened.open()
        self.assertEqual(sorted(reopened.ids()), ["a", "b"])
        self.assertEqual(reopened.get("a").vector, unit(4, 0))
        self.index = reopened

    def test_operations_require_open(self):
        closed = FAISSIndex(self.dir / "other", embedding_dim=4)

        with self.assertRaises(StorageError):
            closed.search(unit(4, 0))


if __name__ == "__main__":
    unittest.main()
