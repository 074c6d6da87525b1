import os
import sys
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import ExerciseRepository, WorkoutExerciseRepository, WorkoutRepository
from search_service import ExerciseSearch, SearchService


class ExerciseSearchTestCase(unittest.TestCase):
    def test_normalize(self) -> None:
        self.assertEqual(ExerciseSearch.normalize("  Incline-Bench   Press!! "), "incline bench press")
        self.assertEqual(ExerciseSearch.normalize("Crème Brûlée"), "creme brulee")
        self.assertEqual(ExerciseSearch.normalize("T-Bar Row (Cable)"), "t bar row cable")
        self.assertEqual(ExerciseSearch.normalize("!!!"), "")
        self.assertEqual(ExerciseSearch.normalize("İstanbul Straße"), "istanbul strasse")
        # casefold expands the iota subscript before marks are dropped
        self.assertEqual(ExerciseSearch.normalize("\u1fb3"), "\u03b1\u03b9")

    def test_substring_score(self) -> None:
        self.assertEqual(ExerciseSearch.fuzzy_score("bench", "Bench Press"), 10000 - 11)
        self.assertEqual(
            ExerciseSearch.fuzzy_score("bench", "Incline Bench Press"), 10000 - 8 * 20 - 19
        )

    def test_earlier_shorter_match_ranks_higher(self) -> None:
        a = ExerciseSearch.fuzzy_score("bench", "Bench Press")
        b = ExerciseSearch.fuzzy_score("bench", "Incline Bench Press")
        self.assertGreater(a, b)

    def test_subsequence_fallback(self) -> None:
        # b at 0 scores 25 + 40 + 30, p at 6 scores 25 + 40 + 24, length penalty 11 - 2
        self.assertEqual(ExerciseSearch.fuzzy_score("bp", "Bench Press"), 95 + 89 - 9)

    def test_every_term_must_match(self) -> None:
        self.assertIsNotNone(ExerciseSearch.fuzzy_score("press bench", "Bench Press"))
        self.assertIsNone(ExerciseSearch.fuzzy_score("bench xyz", "Bench Press"))

    def test_empty_inputs(self) -> None:
        self.assertEqual(ExerciseSearch.fuzzy_score("", "Squat"), 0)
        self.assertEqual(ExerciseSearch.fuzzy_score("  --  ", "Squat", frequency=50), 0)
        self.assertIsNone(ExerciseSearch.fuzzy_score("squat", "!!!"))

    def test_frequency_bonus(self) -> None:
        base = ExerciseSearch.fuzzy_score("bench", "Bench Press")
        boosted = ExerciseSearch.fuzzy_score("bench", "Bench Press", frequency=1)
        self.assertEqual(boosted, base + int(base * 0.2))

    def test_frequency_is_monotonic(self) -> None:
        for query, candidate in (("bench", "Incline Bench Press"), ("bp", "Bench Press"), ("sq", "Squat")):
            scores = [
                ExerciseSearch.fuzzy_score(query, candidate, frequency=f) for f in range(0, 60)
            ]
            self.assertEqual(scores, sorted(scores))


class SearchServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_search.db"
        self._cleanup()
        self.exercises = ExerciseRepository(self.db_path)
        for name in ("Bench Press", "Incline Bench Press", "Squat", "Deadlift"):
            self.exercises.ensure(name)

    def tearDown(self) -> None:
        self._cleanup()

    def _cleanup(self) -> None:
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(self.db_path + suffix):
                os.remove(self.db_path + suffix)

    def _use(self, name: str, times: int) -> None:
        workouts = WorkoutRepository(self.db_path)
        entries = WorkoutExerciseRepository(self.db_path)
        wid = workouts.start_or_resume_pending()
        ex_id = self.exercises.fetch_by_name(name)
        for _ in range(times):
            entries.add(wid, ex_id)

    def test_ranking(self) -> None:
        service = SearchService(self.exercises)
        names = [r["name"] for r in service.search("bench")]
        self.assertEqual(names, ["Bench Press", "Incline Bench Press"])

    def test_limit(self) -> None:
        service = SearchService(self.exercises)
        self.assertEqual(len(service.search("", limit=2)), 2)

    def test_empty_query_orders_by_frequency_then_name(self) -> None:
        self._use("Squat", 3)
        service = SearchService(self.exercises)
        names = [r["name"] for r in service.search("")]
        self.assertEqual(names, ["Squat", "Bench Press", "Deadlift", "Incline Bench Press"])

    def test_frequency_weight_override(self) -> None:
        self._use("Incline Bench Press", 40)
        neutral = SearchService(self.exercises, frequency_weight=0.0)
        self.assertEqual(neutral.search("bench")[0]["name"], "Bench Press")
        heavy = SearchService(self.exercises, frequency_weight=1.0)
        self.assertEqual(heavy.search("bench")[0]["name"], "Incline Bench Press")


if __name__ == "__main__":
    unittest.main()
