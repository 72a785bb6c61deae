"""
Tests for the remember / forget / recall workflows.
"""
import numpy as np

from hybrid_memory.memory.errors import MemoryNotFoundError, MissingParameterError
from hybrid_memory.memory.models import MemoryCategory
from hybrid_memory.memory.workflows import (
    forget, recall, remember, standing_instructions
)

from fakes import TEST_DIM
from test_memory_system import StoreTestCase


class TestRemember(StoreTestCase):

    async def test_creates_new_memory(self):
        result = await remember(self.store, "User lives in Lisbon", MemoryCategory.FACT, importance=0.7)

        self.assertEqual(result.action, "created")
        self.assertIsNone(result.score)
        self.assertEqual(result.memory.importance, 0.7)
        self.assertEqual(self.store.count(), 1)

    async def test_skips_duplicate(self):
        first = await remember(self.store, "User lives in Lisbon", "fact")
        second = await remember(self.store, "User lives in Lisbon", "fact")

        self.assertEqual(second.action, "duplicate")
        self.assertEqual(second.memory.id, first.memory.id)
        self.assertAlmostEqual(second.score, 1.0)
        self.assertEqual(self.store.count(), 1)

    async def test_threshold_override(self):
        base = np.zeros(TEST_DIM)
        self.embeddings.overrides["Drinks coffee"] = base.tolist()
        near = base.copy()
        near[0] = 0.5
        self.embeddings.overrides["Drinks coffee daily"] = near.tolist()

        await remember(self.store, "Drinks coffee", "preference")

        # score is 1 / (1 + 0.25) = 0.8
        lenient = await remember(self.store, "Drinks coffee daily", "preference", dedup_threshold=0.5)
        self.assertEqual(lenient.action, "duplicate")
        self.assertAlmostEqual(lenient.score, 0.8, places=5)

        strict = await remember(self.store, "Drinks coffee daily", "preference")
        self.assertEqual(strict.action, "created")


class TestForget(StoreTestCase):

    async def asyncSetUp(self):
        self.tea = await self.store.create("User drinks green tea", "preference")
        self.job = await self.store.create("User works as a nurse", "fact")

    async def test_forget_by_id(self):
        result = await forget(self.store, identifier=self.tea.id, reason="outdated")

        self.assertEqual(result.action, "deleted")
        self.assertEqual(result.memory.id, self.tea.id)
        deleted = self.store.get(self.tea.id)
        self.assertEqual(deleted.delete_reason, "outdated")
        self.assertNotIn(self.tea.id, self.store.vector_index)

    async def test_forget_by_short_id(self):
        result = await forget(self.store, identifier=self.job.short_id)

        self.assertEqual(result.action, "deleted")
        self.assertTrue(self.store.get(self.job.id).is_deleted)

    async def test_forget_unknown_or_deleted_id(self):
        with self.assertRaises(MemoryNotFoundError):
            await forget(self.store, identifier="no-such-memory")

        await self.store.delete(self.tea.id)
        with self.assertRaises(MemoryNotFoundError):
            await forget(self.store, identifier=self.tea.id)

    async def test_forget_requires_id_or_query(self):
        with self.assertRaises(MissingParameterError):
            await forget(self.store)
        with self.assertRaises(ValueError):
            await forget(self.store, query="   ")

    async def test_confident_single_match_is_deleted(self):
        result = await forget(self.store, query="User drinks green tea")

        self.assertEqual(result.action, "deleted")
        self.assertEqual(result.memory.id, self.tea.id)
        self.assertEqual(self.store.count(), 1)

    async def test_weak_matches_are_returned_as_candidates(self):
        result = await forget(self.store, query="something unrelated")

        self.assertEqual(result.action, "candidates")
        self.assertEqual({r.memory.id for r in result.candidates}, {self.tea.id, self.job.id})
        self.assertEqual(self.store.count(), 2)

    async def test_several_confident_matches_are_not_deleted(self):
        vector = np.full(TEST_DIM, 0.5)
        self.embeddings.overrides["tea"] = vector.tolist()
        self.embeddings.overrides["Tea with milk"] = vector.tolist()
        nearby = vector.copy()
        nearby[0] += 0.1
        self.embeddings.overrides["Tea with lemon"] = nearby.tolist()
        await self.store.create("Tea with milk", "preference")
        await self.store.create("Tea with lemon", "preference")

        result = await forget(self.store, query="tea")

        self.assertEqual(result.action, "candidates")
        self.assertEqual(self.store.count(), 4)

    async def test_candidate_limit(self):
        result = await forget(self.store, query="something unrelated", candidate_limit=1)

        self.assertEqual(len(result.candidates), 1)

    async def test_no_match(self):
        await self.store.delete(self.tea.id)
        await self.store.delete(self.job.id)

        result = await forget(self.store, query="User drinks green tea")

        self.assertEqual(result.action, "no_match")
        self.assertIsNone(result.memory)
        self.assertEqual(result.candidates, [])


class TestRecall(StoreTestCase):

    async def test_recall_touches_results(self):
        memory = await self.store.create("Allergic to peanuts", "fact")
        other = await self.store.create("Birthday is in May", "event")
        self.clock.advance(5_000)

        results = await recall(self.store, "Allergic to peanuts", category="fact")

        self.assertEqual([r.memory.id for r in results], [memory.id])
        self.assertEqual(self.store.get(memory.id).last_accessed_at, self.clock.now)
        self.assertEqual(self.store.get(other.id).last_accessed_at, self.clock.now - 5_000)

    async def test_recall_without_touch(self):
        memory = await self.store.create("Allergic to peanuts", "fact")
        self.clock.advance(5_000)

        await recall(self.store, "Allergic to peanuts", touch=False)

        self.assertEqual(self.store.get(memory.id).last_accessed_at, memory.last_accessed_at)


class TestStandingInstructions(StoreTestCase):

    async def test_instructions_by_importance(self):
        low = await self.store.create("Sign off with a joke", "instruction", importance=0.2)
        high = await self.store.create("Always answer in English", "instruction", importance=0.9)
        await self.store.create("Likes jazz", "preference", importance=1.0)

        instructions = standing_instructions(self.store)

        self.assertEqual([m.id for m in instructions], [high.id, low.id])
        self.assertEqual(len(standing_instructions(self.store, limit=1)), 1)
