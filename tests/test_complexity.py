"""Tests for complexity scoring."""

import unittest

from hypothesis import given, settings, strategies as st

from diffsage.complexity import (
    ComplexityScorer,
    ComplexityThresholds,
    bucket,
    is_config_path,
    is_migration_path,
)
from diffsage.diff_parser import FileChange


def change(path: str, added: int, removed: int = 0) -> FileChange:
    return FileChange(path=path, added=added, removed=removed, status="modified")


class TestScore(unittest.TestCase):
    def setUp(self):
        self.scorer = ComplexityScorer()

    def test_empty_scores_one(self):
        self.assertEqual(self.scorer.score([]), 1)

    def test_small_change_scores_one(self):
        self.assertEqual(self.scorer.score([change("src/a.py", 3)]), 1)

    def test_line_volume_raises_score(self):
        self.assertEqual(self.scorer.score([change("src/a.py", 120)]), 2)
        self.assertEqual(self.scorer.score([change("src/a.py", 1500)]), 5)

    def test_file_count_raises_score(self):
        files = [change(f"src/m{i}.py", 1) for i in range(11)]
        self.assertEqual(self.scorer.score(files), 3)

    def test_migration_bonus(self):
        self.assertEqual(self.scorer.score([change("db/migrations/0002_add.py", 4)]), 3)

    def test_config_bonus(self):
        self.assertEqual(self.scorer.score([change(".github/workflows/ci.yml", 2)]), 2)

    def test_bucket_boundaries(self):
        bounds = (50, 200, 500, 1000)
        self.assertEqual(bucket(0, bounds), 1)
        self.assertEqual(bucket(50, bounds), 1)
        self.assertEqual(bucket(51, bounds), 2)
        self.assertEqual(bucket(1001, bounds), 5)

    def test_path_classifiers(self):
        self.assertTrue(is_migration_path("alembic/versions/1.py"))
        self.assertTrue(is_migration_path("schema.sql"))
        self.assertFalse(is_migration_path("src/app.py"))
        self.assertTrue(is_config_path("config/settings.yaml"))
        self.assertTrue(is_config_path("Dockerfile"))
        self.assertFalse(is_config_path("src/configure.py"))


class TestThresholdValidation(unittest.TestCase):
    def test_not_increasing(self):
        with self.assertRaises(ValueError):
            ComplexityScorer(ComplexityThresholds(lines=(10, 10, 20, 30)))

    def test_wrong_length(self):
        with self.assertRaises(ValueError):
            ComplexityScorer(ComplexityThresholds(files=(1, 2, 3)))

    def test_file_bounds_below_line_bounds(self):
        with self.assertRaises(ValueError):
            ComplexityScorer(ComplexityThresholds(file_lines=(10, 20, 30, 40)))

    def test_custom_thresholds(self):
        scorer = ComplexityScorer(ComplexityThresholds(lines=(5, 10, 15, 20), file_lines=(5, 10, 15, 20)))
        self.assertEqual(scorer.score([change("src/a.py", 12)]), 3)


paths = st.sampled_from([
    "src/app.py", "src/util.ts", "db/migrations/001.sql", "config/app.yaml", "README.md", "lib/core.go",
])
changes = st.builds(change, paths, st.integers(0, 1500), st.integers(0, 1500))


class TestScoreProperties(unittest.TestCase):
    scorer = ComplexityScorer()

    @settings(max_examples=100, deadline=None)
    @given(st.lists(changes, max_size=60))
    def test_score_in_range(self, files):
        self.assertIn(self.scorer.score(files), range(1, 6))

    @settings(max_examples=100, deadline=None)
    @given(st.lists(changes, max_size=30), st.lists(changes, min_size=1, max_size=30))
    def test_adding_files_never_lowers_score(self, base, extra):
        self.assertGreaterEqual(self.scorer.score(base + extra), self.scorer.score(base))

    @settings(max_examples=100, deadline=None)
    @given(st.lists(changes, min_size=1, max_size=30), st.integers(0, 29), st.integers(1, 500))
    def test_growing_a_file_never_lowers_score(self, files, idx, extra_lines):
        idx = idx % len(files)
        grown = list(files)
        target = grown[idx]
        grown[idx] = change(target.path, target.added + extra_lines, target.removed)
        self.assertGreaterEqual(self.scorer.score(grown), self.scorer.score(files))

    @settings(max_examples=100, deadline=None)
    @given(
        st.integers(0, 5000), st.integers(0, 100), st.integers(0, 100),
        st.lists(st.integers(1, 5), max_size=20), st.booleans(), st.booleans(),
    )
    def test_dimensions_monotonic(self, lines, files, more_files, file_scores, migration, config):
        base = self.scorer.score_dimensions(lines, files, file_scores, migration, config)
        grown = self.scorer.score_dimensions(lines + 10, files + more_files, file_scores, migration, config)
        self.assertGreaterEqual(grown, base)
        self.assertIn(base, range(1, 6))


if __name__ == "__main__":
    unittest.main()
