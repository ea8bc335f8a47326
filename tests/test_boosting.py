"""Tests for the boosting loop."""

import logging

import numpy as np
import pytest

import partboost as pb
from partboost._boosting import compute_raw_base, make_trainer_context


@pytest.fixture
def regression_data():
    """Generate simple regression data."""
    np.random.seed(42)
    X = np.random.randn(400, 5)
    y = 2 * X[:, 0] + X[:, 1] + np.random.randn(400) * 0.1
    return X, y


@pytest.fixture
def multiclass_data():
    np.random.seed(42)
    X = np.random.randn(300, 4)
    y = np.argmax(X[:, :3], axis=1)
    return X, y


def _dataset(X, y, num_partitions=3, objective=None):
    objective = objective or pb.SquaredError()
    labels = objective.prepare_labels(y)
    rows = [(1.0, labels[i], X[i]) for i in range(X.shape[0])]
    return pb.PartitionedDataset.from_sequence(rows, num_partitions)


def _fit(X, y, test=None, **kwargs):
    kwargs.setdefault("objective", pb.SquaredError())
    config = pb.BoostConfig(**kwargs)
    disc = pb.QuantileDiscretizer(max_bins=config.max_bins).fit(X)
    train = _dataset(X, y, objective=config.objective)
    test_ds = None if test is None else _dataset(*test, objective=config.objective)
    return pb.boost(train, test_ds, config, disc)


class _ScriptedTrainer:
    """Returns a fixed sequence of tree lists."""

    def __init__(self, script):
        self.script = list(script)
        self.contexts = []

    def train(self, data, context):
        self.contexts.append(context)
        return self.script.pop(0)


class TestSetup:
    """Base score and trainer context."""

    def test_weighted_mean_label(self):
        rows = [(1.0, [1.0], [0.0]), (3.0, [5.0], [0.0])]
        data = pb.PartitionedDataset([rows[:1], rows[1:]])
        config = pb.BoostConfig(objective=pb.SquaredError())
        np.testing.assert_allclose(compute_raw_base(data, config), [4.0])

    def test_base_score_mapped_to_raw(self):
        data = pb.PartitionedDataset([[(1.0, [1.0], [0.0])]])
        config = pb.BoostConfig(objective=pb.Logistic(), base_score=[0.5])
        np.testing.assert_allclose(compute_raw_base(data, config), [0.0], atol=1e-9)

    def test_zero_weight_rejected(self):
        data = pb.PartitionedDataset([[(0.0, [1.0], [0.0])]])
        with pytest.raises(ValueError, match="weights"):
            compute_raw_base(data, pb.BoostConfig(objective=pb.SquaredError()))

    def test_base_score_width_checked(self):
        data = pb.PartitionedDataset([[(1.0, [1.0], [0.0])]])
        config = pb.BoostConfig(objective=pb.SquaredError(), base_score=[0.1, 0.2])
        with pytest.raises(ValueError, match="base score"):
            compute_raw_base(data, config)

    def test_column_selectors_shared_within_unit(self):
        config = pb.BoostConfig(objective=pb.Softmax(3), col_sample_by_tree=0.5,
                                base_model_parallelism=2, seed=4)
        ctx = make_trainer_context(config, 10, iteration=7)
        assert ctx.num_trees == 6
        assert len(ctx.col_selectors[0]) == 5
        np.testing.assert_array_equal(ctx.col_selectors[0], ctx.col_selectors[2])
        again = make_trainer_context(config, 10, iteration=7)
        np.testing.assert_array_equal(ctx.col_selectors[3], again.col_selectors[3])

    def test_wide_column_selection_sorted(self):
        """More than 32 sampled columns still give a sorted, distinct id array."""
        config = pb.BoostConfig(objective=pb.SquaredError(), col_sample_by_tree=0.8, seed=2)
        selector = make_trainer_context(config, 100, iteration=3).col_selectors[0]
        assert len(selector) == 80
        assert selector.dtype == np.int64
        np.testing.assert_array_equal(selector, np.unique(selector))
        assert selector.min() >= 0 and selector.max() < 100

    def test_no_column_sampling(self):
        config = pb.BoostConfig(objective=pb.SquaredError())
        assert make_trainer_context(config, 4, 0).col_selectors == (None,)


class TestBoost:
    """End-to-end runs of the loop."""

    def test_gbtree_reduces_loss(self, regression_data):
        X, y = regression_data
        model, state = _fit(X, y, max_iter=30, step_size=0.3, eval_funcs=[pb.RMSE()])
        assert model.num_trees == 30
        assert state.iteration == 30
        assert len(state.train_history) == 30
        assert state.train_history[-1]["rmse"] < state.train_history[0]["rmse"]
        assert np.mean((model.predict(X) - y) ** 2) < 0.2 * np.var(y)

    def test_history_matches_model(self, regression_data):
        """The last train metric equals the metric of the final model."""
        X, y = regression_data
        model, state = _fit(X, y, max_iter=8, step_size=0.3, eval_funcs=[pb.MSE()])
        assert state.train_history[-1]["mse"] == pytest.approx(np.mean((model.predict(X) - y) ** 2))

    def test_train_history_only_with_metrics(self, regression_data):
        X, y = regression_data
        _, state = _fit(X, y, test=(X[:50], y[:50]), max_iter=3)
        assert state.train_history == []
        assert state.test_history == [{}, {}, {}]

    def test_max_iter_zero(self, regression_data):
        X, y = regression_data
        model, state = _fit(X, y, max_iter=0)
        assert model.num_trees == 0
        np.testing.assert_allclose(model.predict(X[:3]), np.mean(y))

    def test_dart_weights_and_scores(self, regression_data):
        """Under DART the final raw scores equal a cold recomputation."""
        X, y = regression_data
        model, state = _fit(X, y, max_iter=15, boost_type=pb.DART, drop_rate=0.3,
                            drop_skip=0.0, step_size=0.5, eval_funcs=[pb.MSE()], seed=7)
        assert model.num_trees == 15
        assert any(w != pytest.approx(1.0) for w in model.weights)
        assert state.train_history[-1]["mse"] == pytest.approx(np.mean((model.predict(X) - y) ** 2))

    def test_dart_logs_drops(self, regression_data, caplog):
        X, y = regression_data
        with caplog.at_level(logging.INFO, logger="partboost"):
            _fit(X, y, max_iter=4, boost_type=pb.DART, drop_rate=0.5, drop_skip=0.0)
        messages = [r.getMessage() for r in caplog.records]
        assert "Iteration 0: skip drop" in messages
        assert any("trees dropped" in m for m in messages)

    def test_same_seed_same_model(self, regression_data):
        X, y = regression_data
        kwargs = dict(max_iter=5, sub_sample=0.7, col_sample_by_tree=0.6,
                      boost_type=pb.DART, drop_rate=0.3, drop_skip=0.3, seed=9)
        a, _ = _fit(X, y, **kwargs)
        b, _ = _fit(X, y, **kwargs)
        np.testing.assert_allclose(a.predict(X), b.predict(X))
        assert a.weights == b.weights

    def test_multiclass(self, multiclass_data):
        X, y = multiclass_data
        model, state = _fit(X, y, objective=pb.Softmax(3), max_iter=20, step_size=0.3,
                            eval_funcs=[pb.ErrorRate()])
        assert model.num_trees == 60
        proba = model.predict(X)
        assert proba.shape == (300, 3)
        np.testing.assert_allclose(proba.sum(axis=1), 1.0)
        assert state.train_history[-1]["error"] < 0.2

    def test_base_model_parallelism(self, regression_data):
        X, y = regression_data
        model, _ = _fit(X, y, max_iter=4, base_model_parallelism=3, sub_sample=0.6)
        assert model.num_trees == 12

    def test_gbtree_weights_with_three_trees_per_iteration(self, regression_data):
        """Three trees per iteration over two iterations all weigh step_size."""
        X, y = regression_data
        model, state = _fit(X, y, max_iter=2, base_model_parallelism=3, step_size=0.1)
        assert model.num_trees == 6
        assert list(model.weights) == pytest.approx([0.1] * 6)
        assert list(state.weights) == pytest.approx([0.1] * 6)

    def test_float32(self, regression_data):
        X, y = regression_data
        model, state = _fit(X, y, max_iter=5, float_type=pb.SINGLE_PRECISION,
                            eval_funcs=[pb.RMSE()])
        assert model.num_trees == 5
        assert np.isfinite(state.train_history[-1]["rmse"])

    def test_checkpointing_during_training(self, regression_data, tmp_path):
        X, y = regression_data
        model, _ = _fit(X, y, max_iter=6, checkpoint_interval=2, checkpoint_dir=str(tmp_path))
        assert model.num_trees == 6
        # checkpoint files are removed once training is over
        assert list(tmp_path.iterdir()) == []

    def test_stops_when_no_tree_is_built(self, regression_data):
        X, y = regression_data
        config = pb.BoostConfig(objective=pb.SquaredError(), max_iter=10)
        disc = pb.QuantileDiscretizer(max_bins=8).fit(X)
        trainer = _ScriptedTrainer([[pb.TreeModel(pb.LeafNode(0.5, 0))], [None]])
        model, state = pb.boost(_dataset(X, y), None, config, disc, trainer=trainer)
        assert model.num_trees == 1
        assert state.finished
        assert state.iteration == 2
        assert [c.iteration for c in trainer.contexts] == [0, 1]

    def test_partial_none_trees_filled(self, multiclass_data):
        """A unit with some missing trees keeps its raw dimensions aligned."""
        X, y = multiclass_data
        config = pb.BoostConfig(objective=pb.Softmax(3), max_iter=1)
        disc = pb.QuantileDiscretizer(max_bins=8).fit(X)
        leaf = pb.TreeModel(pb.LeafNode(1.0, 0))
        trainer = _ScriptedTrainer([[leaf, None, leaf]])
        model, _ = pb.boost(_dataset(X, y, objective=config.objective), None, config, disc,
                            trainer=trainer)
        assert model.num_trees == 3
        assert model.trees[1].predict([0]) == 0.0

    def test_warm_start(self, regression_data):
        X, y = regression_data
        first, _ = _fit(X, y, max_iter=5, step_size=0.3)
        config = pb.BoostConfig(objective=pb.SquaredError(), max_iter=5, step_size=0.3)
        second, _ = pb.boost(_dataset(X, y), None, config, first.discretizer, init_model=first)
        assert second.num_trees == 10
        np.testing.assert_allclose(second.raw_base, first.raw_base)
        assert second.trees[:5] == first.trees
        err_first = np.mean((first.predict(X) - y) ** 2)
        err_second = np.mean((second.predict(X) - y) ** 2)
        assert err_second < err_first

    def test_warm_start_raw_size_mismatch(self, regression_data):
        X, y = regression_data
        first, _ = _fit(X, y, max_iter=1)
        config = pb.BoostConfig(objective=pb.Softmax(2), max_iter=1)
        with pytest.raises(ValueError, match="raw_size"):
            pb.boost(_dataset(X, (y > 0).astype(int), objective=config.objective), None,
                     config, first.discretizer, init_model=first)

    def test_invalid_config_fails_before_training(self, regression_data):
        X, y = regression_data
        with pytest.raises(ValueError, match="sub_sample"):
            _fit(X, y, sub_sample=0.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
