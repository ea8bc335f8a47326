"""Tests for the histogram tree trainer."""

import numpy as np
import pytest

import partboost as pb
from partboost._core._growth import compute_leaf_value, go_left_mask


def _rows(matrix, grad, hess, tree_ids=None):
    """(bins, tree_ids, grads) rows for a single output."""
    rows = []
    for i in range(matrix.shape[0]):
        ids = np.array([0] if tree_ids is None else tree_ids[i], dtype=np.int64)
        rows.append((matrix[i], ids, np.array([grad[i], hess[i]])))
    return pb.PartitionedDataset.from_sequence(rows, 2)


def _context(num_trees=1, raw_size=1, selectors=None):
    if selectors is None:
        selectors = (None,) * num_trees
    return pb.TrainerContext(0, num_trees, raw_size, selectors)


class TestLeafValue:
    """Newton leaf values."""

    def test_l2(self):
        assert compute_leaf_value(4.0, 1.0, reg_lambda=1.0) == pytest.approx(-2.0)

    def test_l1_soft_threshold(self):
        assert compute_leaf_value(0.5, 1.0, 1.0, reg_alpha=1.0) == 0.0
        assert compute_leaf_value(3.0, 1.0, 1.0, reg_alpha=1.0) == pytest.approx(-1.0)
        assert compute_leaf_value(-3.0, 1.0, 1.0, reg_alpha=1.0) == pytest.approx(1.0)


class TestGrowth:
    """Tree structure learned from gradients."""

    def test_step_function(self):
        """Gradients that flip at bin 3 yield a threshold split at 3."""
        np.random.seed(42)
        matrix = np.random.randint(1, 7, size=(400, 2)).astype(np.int32)
        target = np.where(matrix[:, 0] <= 3, -1.0, 1.0)
        grad = -2.0 * target
        hess = np.full(400, 2.0)

        trainer = pb.HistogramTreeTrainer(num_bins=8, max_depth=1, reg_lambda=0.0)
        trees = trainer.train(_rows(matrix, grad, hess), _context())
        assert len(trees) == 1
        tree = trees[0]
        assert tree.depth == 1
        assert tree.root.col_id == 0
        assert tree.root.data == (3,)

        pred = tree.predict_block(matrix)
        np.testing.assert_allclose(pred, target)

    def test_no_split_returns_none(self):
        """Constant gradients cannot be split."""
        matrix = np.random.RandomState(0).randint(1, 5, size=(50, 2)).astype(np.int32)
        trainer = pb.HistogramTreeTrainer(num_bins=8)
        trees = trainer.train(_rows(matrix, np.ones(50), np.ones(50)), _context())
        assert trees == [None]

    def test_empty_data(self):
        trainer = pb.HistogramTreeTrainer(num_bins=8)
        empty = pb.PartitionedDataset([[], []])
        assert trainer.train(empty, _context(num_trees=2)) == [None, None]

    def test_max_depth_and_leaves(self):
        np.random.seed(42)
        matrix = np.random.randint(1, 16, size=(1000, 3)).astype(np.int32)
        grad = np.random.randn(1000)
        hess = np.ones(1000)

        deep = pb.HistogramTreeTrainer(num_bins=16, max_depth=3, min_node_hess=1.0)
        tree = deep.train(_rows(matrix, grad, hess), _context())[0]
        assert tree.depth <= 3
        assert tree.num_leaves <= 8

        narrow = pb.HistogramTreeTrainer(num_bins=16, max_depth=10, max_leaves=4)
        tree = narrow.train(_rows(matrix, grad, hess), _context())[0]
        assert tree.num_leaves <= 4

    def test_min_node_hess(self):
        """No leaf ends up with less hessian than min_node_hess."""
        np.random.seed(42)
        matrix = np.random.randint(1, 16, size=(300, 2)).astype(np.int32)
        grad = np.random.randn(300)
        hess = np.ones(300)
        trainer = pb.HistogramTreeTrainer(num_bins=16, max_depth=6, min_node_hess=40.0)
        tree = trainer.train(_rows(matrix, grad, hess), _context())[0]

        leaves = tree.index_block(matrix)
        _, counts = np.unique(leaves, return_counts=True)
        assert counts.min() >= 40

    def test_missing_values_routed(self):
        """Rows in bin 0 follow the side with matching gradients."""
        matrix = np.array([[0]] * 50 + [[1]] * 50 + [[2]] * 50, dtype=np.int32)
        grad = np.array([-1.0] * 50 + [-1.0] * 50 + [1.0] * 50)
        hess = np.ones(150)
        trainer = pb.HistogramTreeTrainer(num_bins=4, max_depth=1, reg_lambda=0.0)
        tree = trainer.train(_rows(matrix, grad, hess), _context())[0]
        pred = tree.predict_block(matrix)
        assert pred[0] == pytest.approx(pred[50])
        assert pred[0] > 0 > pred[-1]

    def test_categorical_split(self):
        """Non-contiguous categories are grouped by a set split."""
        np.random.seed(42)
        matrix = np.random.randint(1, 7, size=(600, 1)).astype(np.int32)
        positive = np.isin(matrix[:, 0], [1, 4, 6])
        grad = np.where(positive, -1.0, 1.0)
        hess = np.ones(600)

        trainer = pb.HistogramTreeTrainer(num_bins=8, max_depth=1, cat_cols=[0], reg_lambda=0.0)
        tree = trainer.train(_rows(matrix, grad, hess), _context())[0]
        assert not tree.root.is_seq
        assert set(tree.root.data) in ({1, 4, 6}, {2, 3, 5})
        pred = tree.predict_block(matrix)
        assert np.all(pred[positive] > 0)
        assert np.all(pred[~positive] < 0)

    def test_column_selector(self):
        """A tree only splits on its selected columns."""
        np.random.seed(42)
        matrix = np.random.randint(1, 9, size=(500, 3)).astype(np.int32)
        grad = np.where(matrix[:, 0] <= 4, -1.0, 1.0) + 0.1 * np.random.randn(500)
        hess = np.ones(500)
        trainer = pb.HistogramTreeTrainer(num_bins=10, max_depth=3)
        ctx = _context(selectors=(np.array([1, 2]),))
        tree = trainer.train(_rows(matrix, grad, hess), ctx)[0]
        assert tree is not None
        assert 0 not in tree.used_columns()

    def test_rows_per_tree(self):
        """Each tree only sees the rows carrying its id."""
        matrix = np.array([[1]] * 40 + [[2]] * 40, dtype=np.int32)
        grad = np.array([-1.0] * 40 + [1.0] * 40)
        hess = np.ones(80)
        ids = [[0, 1]] * 40 + [[0]] * 40
        trainer = pb.HistogramTreeTrainer(num_bins=4, max_depth=2)
        trees = trainer.train(_rows(matrix, grad, hess, ids), _context(num_trees=2))
        assert trees[0] is not None
        # tree 1 only has rows with identical gradients
        assert trees[1] is None

    def test_multi_output_uses_own_gradients(self):
        """Tree t fits gradient column t % raw_size."""
        np.random.seed(42)
        matrix = np.random.randint(1, 5, size=(200, 1)).astype(np.int32)
        g0 = np.where(matrix[:, 0] <= 2, -1.0, 1.0)
        g1 = -g0
        rows = [
            (matrix[i], np.array([0, 1]), np.array([g0[i], 1.0, g1[i], 1.0]))
            for i in range(200)
        ]
        data = pb.PartitionedDataset.from_sequence(rows, 2)
        trainer = pb.HistogramTreeTrainer(num_bins=6, max_depth=1)
        t0, t1 = trainer.train(data, _context(num_trees=2, raw_size=2))
        np.testing.assert_allclose(t0.predict_block(matrix), -t1.predict_block(matrix))

    def test_parallel_matches_serial(self):
        np.random.seed(42)
        matrix = np.random.randint(1, 9, size=(300, 4)).astype(np.int32)
        grad = np.random.randn(300)
        hess = np.ones(300)
        ids = [[0, 1, 2]] * 300
        serial = pb.HistogramTreeTrainer(num_bins=10, n_jobs=1)
        parallel = pb.HistogramTreeTrainer(num_bins=10, n_jobs=3)
        a = serial.train(_rows(matrix, grad, hess, ids), _context(num_trees=3))
        b = parallel.train(_rows(matrix, grad, hess, ids), _context(num_trees=3))
        for x, y in zip(a, b):
            np.testing.assert_allclose(x.predict_block(matrix), y.predict_block(matrix))

    def test_satisfies_protocol(self):
        assert isinstance(pb.HistogramTreeTrainer(num_bins=8), pb.TreeTrainer)


class TestGoLeftMask:
    """Vectorized split test agrees with the node test."""

    @pytest.mark.parametrize("split", [
        pb.Split(0, True, True, (3,)),
        pb.Split(0, True, False, (2,), left=False),
        pb.Split(0, False, True, (1, 4)),
        pb.Split(0, False, False, (2, 5), left=False),
    ])
    def test_matches_rowwise(self, split):
        bins = np.arange(0, 7, dtype=np.int32)
        expected = np.array([split.go_left([b]) for b in bins])
        np.testing.assert_array_equal(go_left_mask(bins, split), expected)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
