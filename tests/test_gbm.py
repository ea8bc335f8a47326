"""Tests for the GBM front end."""

import numpy as np
import pytest

import partboost as pb


@pytest.fixture
def regression_data():
    """Generate simple regression data."""
    np.random.seed(42)
    X = np.random.randn(300, 4)
    y = X[:, 0] - 0.5 * X[:, 2] + np.random.randn(300) * 0.1
    return X, y


def _config(**kwargs):
    kwargs.setdefault("objective", pb.SquaredError())
    kwargs.setdefault("max_iter", 10)
    return pb.BoostConfig(**kwargs)


class TestFit:
    """Fitting numpy input."""

    def test_fit_returns_self(self, regression_data):
        X, y = regression_data
        gbm = pb.GBM(_config())
        assert gbm.fit(X, y) is gbm
        assert gbm.n_iter_ == 10
        assert gbm.model_.num_trees == 10
        assert gbm.predict(X).shape == (300,)
        assert gbm.predict_raw(X).shape == (300, 1)
        assert gbm.leaf(X).shape == (300, 10)

    def test_eval_set_tuple_and_list(self, regression_data):
        X, y = regression_data
        config = _config(eval_funcs=[pb.RMSE()])
        a = pb.GBM(config).fit(X[:200], y[:200], eval_set=(X[200:], y[200:]))
        b = pb.GBM(config).fit(X[:200], y[:200], eval_set=[(X[200:], y[200:])])
        assert len(a.test_history_) == 10
        assert a.test_history_ == b.test_history_

    def test_sample_weight_changes_base(self, regression_data):
        X, y = regression_data
        w = np.where(y > 0, 10.0, 1.0)
        plain = pb.GBM(_config(max_iter=0)).fit(X, y)
        weighted = pb.GBM(_config(max_iter=0)).fit(X, y, sample_weight=w)
        assert weighted.model_.raw_base[0] > plain.model_.raw_base[0]
        assert weighted.model_.raw_base[0] == pytest.approx(np.average(y, weights=w))

    def test_zero_weight_rows_ignored(self, regression_data):
        """Rows with weight 0 have no influence on the trees."""
        X, y = regression_data
        w = np.ones(300)
        w[:50] = 0.0
        y_noisy = y.copy()
        y_noisy[:50] = 100.0
        a = pb.GBM(_config()).fit(X, y_noisy, sample_weight=w)
        b = pb.GBM(_config()).fit(X[50:], y[50:])
        assert a.model_.raw_base[0] == pytest.approx(b.model_.raw_base[0])

    def test_rejects_negative_weights(self, regression_data):
        X, y = regression_data
        with pytest.raises(ValueError, match="non-negative"):
            pb.GBM(_config()).fit(X, y, sample_weight=-np.ones(300))

    def test_rejects_shape_mismatch(self, regression_data):
        X, y = regression_data
        with pytest.raises(ValueError, match="rows"):
            pb.GBM(_config()).fit(X, y[:10])
        with pytest.raises(ValueError, match="2D"):
            pb.GBM(_config()).fit(X[:, 0], y)

    def test_partition_count_does_not_change_model(self, regression_data):
        X, y = regression_data
        a = pb.GBM(_config(num_partitions=1)).fit(X, y)
        b = pb.GBM(_config(num_partitions=7, n_jobs=2)).fit(X, y)
        np.testing.assert_allclose(a.predict(X), b.predict(X), rtol=1e-9, atol=1e-9)

    def test_not_fitted(self):
        with pytest.raises(RuntimeError, match="not fitted"):
            pb.GBM(_config()).predict(np.zeros((1, 4)))

    def test_warm_start(self, regression_data):
        X, y = regression_data
        first = pb.GBM(_config(max_iter=4)).fit(X, y)
        second = pb.GBM(_config(max_iter=3)).fit(X, y, init_model=first.model_)
        assert second.model_.num_trees == 7
        assert second.model_.discretizer is first.model_.discretizer


class TestFitDataset:
    """Fitting partitioned input."""

    def test_fit_dataset(self, regression_data):
        X, y = regression_data
        rows = [(1.0, [y[i]], X[i]) for i in range(300)]
        train = pb.PartitionedDataset.from_sequence(rows[:250], 5)
        test = pb.PartitionedDataset.from_sequence(rows[250:], 2)
        gbm = pb.GBM(_config(eval_funcs=[pb.MAE()])).fit_dataset(train, test)
        assert len(gbm.test_history_) == 10
        assert gbm.test_history_[-1]["mae"] < gbm.test_history_[0]["mae"]

    def test_fit_dataset_matches_fit(self, regression_data):
        X, y = regression_data
        rows = [(1.0, [y[i]], X[i]) for i in range(300)]
        train = pb.PartitionedDataset.from_sequence(rows, 4)
        a = pb.GBM(_config()).fit_dataset(train)
        b = pb.GBM(_config()).fit(X, y)
        np.testing.assert_allclose(a.predict(X), b.predict(X))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
