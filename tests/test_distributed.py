"""Tests for partitioned datasets and checkpointing."""

import numpy as np
import pytest

import partboost as pb
from partboost._distributed import tree_combine


class TestPartitionedDataset:
    """Lazy transformations and actions."""

    def test_from_sequence_contiguous(self):
        ds = pb.PartitionedDataset.from_sequence(list(range(10)), 3)
        assert ds.num_partitions == 3
        assert ds.partitions() == [[0, 1, 2], [3, 4, 5], [6, 7, 8, 9]]
        assert ds.count() == 10

    def test_more_partitions_than_items(self):
        ds = pb.PartitionedDataset.from_sequence([1, 2], 4)
        assert ds.num_partitions == 4
        assert ds.collect() == [1, 2]

    def test_map_is_lazy(self):
        calls = []

        def fn(x):
            calls.append(x)
            return x * 2

        ds = pb.PartitionedDataset.from_sequence([1, 2, 3], 2).map(fn)
        assert calls == []
        assert ds.lineage_depth == 1
        assert ds.collect() == [2, 4, 6]

    def test_unpersisted_recomputes(self):
        calls = []
        ds = pb.PartitionedDataset([[1], [2]]).map(lambda x: calls.append(x) or x)
        ds.collect()
        ds.collect()
        assert len(calls) == 4

    def test_persist_caches(self):
        calls = []
        ds = pb.PartitionedDataset([[1], [2]]).map(lambda x: calls.append(x) or x).persist()
        ds.collect()
        ds.collect()
        assert len(calls) == 2
        assert ds.lineage_depth == 0
        ds.unpersist()
        ds.collect()
        assert len(calls) == 4

    def test_map_partitions_gets_index(self):
        ds = pb.PartitionedDataset([["a"], ["b", "c"]])
        out = ds.map_partitions(lambda i, part: [(i, x) for x in part]).collect()
        assert out == [(0, "a"), (1, "b"), (1, "c")]

    def test_zip(self):
        a = pb.PartitionedDataset([[1, 2], [3]])
        b = a.map(lambda x: x * 10)
        assert a.zip(b).collect() == [(1, 10), (2, 20), (3, 30)]

    def test_zip_requires_equal_sizes(self):
        a = pb.PartitionedDataset([[1, 2], [3]])
        b = pb.PartitionedDataset([[1], [2, 3]])
        with pytest.raises(AssertionError, match="different sizes"):
            a.zip(b).collect()

    def test_zip_requires_same_partition_count(self):
        a = pb.PartitionedDataset([[1], [2]])
        b = pb.PartitionedDataset([[1, 2]])
        with pytest.raises(AssertionError, match="partition counts"):
            a.zip(b)

    def test_parallel_jobs_same_result(self):
        items = list(range(100))
        serial = pb.PartitionedDataset.from_sequence(items, 8).map(lambda x: x * x).collect()
        parallel = pb.PartitionedDataset.from_sequence(items, 8, n_jobs=4).map(lambda x: x * x).collect()
        assert serial == parallel

    def test_released_source_raises(self):
        ds = pb.PartitionedDataset([[1]], name="src")
        ds.unpersist()
        with pytest.raises(RuntimeError, match="released"):
            ds.collect()


class TestAggregation:
    """Tree-shaped aggregation."""

    def test_tree_aggregate_sum(self):
        ds = pb.PartitionedDataset.from_sequence(list(range(1, 101)), 9)
        total = ds.tree_aggregate(0, lambda acc, x: acc + x, lambda a, b: a + b, depth=3)
        assert total == 5050

    def test_tree_aggregate_mutable_zero(self):
        """Every partition starts from its own copy of zero."""
        ds = pb.PartitionedDataset([[1, 2], [3]])
        out = ds.tree_aggregate([], lambda acc, x: acc + [x], lambda a, b: a + b)
        assert sorted(out) == [1, 2, 3]

    def test_tree_aggregate_empty_partitions(self):
        ds = pb.PartitionedDataset([[], [], [4]])
        assert ds.tree_aggregate(0, lambda a, x: a + x, lambda a, b: a + b) == 4

    def test_tree_reduce(self):
        ds = pb.PartitionedDataset([[3, 1], [], [7, 2]])
        assert ds.tree_reduce(max) == 7

    def test_tree_reduce_empty(self):
        with pytest.raises(ValueError, match="empty"):
            pb.PartitionedDataset([[], []]).tree_reduce(max)

    @pytest.mark.parametrize("depth", [0, -1])
    def test_invalid_depth(self, depth):
        ds = pb.PartitionedDataset([[3, 1], [7, 2]])
        with pytest.raises(ValueError, match="depth"):
            ds.tree_reduce(max, depth=depth)
        with pytest.raises(ValueError, match="depth"):
            ds.tree_aggregate(0, lambda a, x: a + x, lambda a, b: a + b, depth=depth)
        with pytest.raises(ValueError, match="depth"):
            tree_combine([1, 2, 3], lambda a, b: a + b, depth)

    @pytest.mark.parametrize("depth", [1, 2, 3, 5])
    def test_tree_combine_depths(self, depth):
        partials = list(range(37))
        assert tree_combine(partials, lambda a, b: a + b, depth) == sum(partials)

    def test_tree_combine_zero(self):
        assert tree_combine([], lambda a, b: a + b, 2, zero=0) == 0
        with pytest.raises(ValueError):
            tree_combine([], lambda a, b: a + b, 2)


class TestCheckpoint:
    """Lineage truncation."""

    def test_checkpoint_truncates_lineage(self, tmp_path):
        ds = pb.PartitionedDataset([[1, 2], [3]]).map(lambda x: x + 1).map(lambda x: x * 2)
        assert ds.lineage_depth == 2
        ds.checkpoint(tmp_path / "ds.joblib")
        assert ds.lineage_depth == 0
        assert ds.collect() == [4, 6, 8]
        assert (tmp_path / "ds.joblib").exists()

    def test_periodic_checkpointer(self, tmp_path):
        """Every third dataset is written; only the newest file remains."""
        ckpt = pb.PeriodicCheckpointer(3, tmp_path)
        assert isinstance(ckpt, pb.Checkpointer)

        ds = pb.PartitionedDataset([[0.0], [0.0]], name="scores")
        history = []
        for i in range(7):
            ds = ds.map(lambda x: x + 1, name=f"scores {i}")
            ckpt.accept(ds)
            history.append(ds)
            assert ds.lineage_depth == 0

        assert ckpt.num_updates == 7
        files = ckpt.checkpoint_files
        assert len(files) == 1
        assert files[0].name == "scores_5-6.joblib"
        assert files[0].exists()
        assert history[-1].collect() == [7.0, 7.0]

        # older datasets are released
        assert not history[0].is_persisted
        assert history[-1].is_persisted

        ckpt.cleanup()
        assert not files[0].exists()

    def test_disabled_checkpointer_writes_nothing(self, tmp_path):
        ckpt = pb.PeriodicCheckpointer(-1, tmp_path)
        ds = pb.PartitionedDataset([[1]])
        for _ in range(5):
            ds = ds.map(lambda x: x + 1)
            ckpt.accept(ds)
        assert ckpt.checkpoint_files == []
        assert list(tmp_path.iterdir()) == []
        assert ds.collect() == [6]
        ckpt.cleanup()

    def test_temporary_directory_removed(self):
        ckpt = pb.PeriodicCheckpointer(1)
        ds = pb.PartitionedDataset([[np.arange(3)]]).map(lambda x: x * 2)
        ckpt.accept(ds)
        directory = ckpt.checkpoint_files[0].parent
        assert directory.exists()
        ckpt.cleanup()
        assert not directory.exists()

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            pb.PeriodicCheckpointer(0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
