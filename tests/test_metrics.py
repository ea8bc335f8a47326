"""Tests for objectives, metrics and distributed evaluation."""

import numpy as np
import pytest

import partboost as pb


class TestObjectives:
    """Transforms and gradients."""

    def test_squared_error(self):
        obj = pb.SquaredError()
        grad, hess = obj.compute(np.array([[1.0]]), np.array([[3.0]]))
        assert grad[0, 0] == pytest.approx(4.0)
        assert hess[0, 0] == pytest.approx(2.0)

    def test_logistic_round_trip(self):
        obj = pb.Logistic()
        p = np.array([0.1, 0.5, 0.9])
        np.testing.assert_allclose(obj.transform(obj.inverse_transform(p)), p)

    def test_logistic_stable(self):
        out = pb.Logistic().transform(np.array([-1000.0, 1000.0]))
        assert np.all(np.isfinite(out))
        np.testing.assert_allclose(out, [0.0, 1.0], atol=1e-12)

    def test_softmax_rows_sum_to_one(self):
        np.random.seed(42)
        raw = np.random.randn(10, 4) * 50
        p = pb.Softmax(4).transform(raw)
        np.testing.assert_allclose(p.sum(axis=1), 1.0)

    def test_softmax_one_hot_labels(self):
        labels = pb.Softmax(3).prepare_labels([0, 2, 1])
        np.testing.assert_array_equal(labels, [[1, 0, 0], [0, 0, 1], [0, 1, 0]])

    def test_softmax_rejects_out_of_range(self):
        with pytest.raises(ValueError, match="Labels"):
            pb.Softmax(3).prepare_labels([0, 3])

    def test_get_objective(self):
        assert isinstance(pb.get_objective("mse"), pb.SquaredError)
        assert pb.get_objective("softmax", num_classes=3).raw_size == 3
        with pytest.raises(ValueError, match="Unknown objective"):
            pb.get_objective("poisson")


class TestMetrics:
    """Incremental and batch metrics."""

    def test_incremental_merge_matches_single_pass(self):
        """Folding two halves and merging equals folding everything."""
        np.random.seed(42)
        w = np.random.rand(100)
        y = np.random.randn(100, 1)
        s = np.random.randn(100, 1)
        metric = pb.RMSE()

        whole = metric.update(metric.init(), w, y, s, s)
        a = metric.update(metric.init(), w[:40], y[:40], s[:40], s[:40])
        b = metric.update(metric.init(), w[40:], y[40:], s[40:], s[40:])
        assert metric.result(metric.merge(a, b)) == pytest.approx(metric.result(whole))

        expected = np.sqrt(np.sum(w * (s[:, 0] - y[:, 0]) ** 2) / w.sum())
        assert metric.result(whole) == pytest.approx(expected)

    def test_empty_state_is_nan(self):
        assert np.isnan(pb.MSE().result(pb.MSE().init()))

    def test_logloss_binary(self):
        y = np.array([[1.0], [0.0]])
        p = np.array([[0.8], [0.3]])
        loss = pb.LogLoss().row_losses(y, p, p)
        np.testing.assert_allclose(loss, [-np.log(0.8), -np.log(0.7)])

    def test_error_rate_multiclass(self):
        y = np.array([[1, 0, 0], [0, 1, 0]], dtype=float)
        p = np.array([[0.7, 0.2, 0.1], [0.6, 0.3, 0.1]])
        np.testing.assert_allclose(pb.ErrorRate().row_losses(y, p, p), [0.0, 1.0])

    def test_auc(self):
        y = np.array([[0.0], [0.0], [1.0], [1.0]])
        s = np.array([[0.1], [0.4], [0.35], [0.8]])
        assert pb.AUC().compute(np.ones(4), y, s, s) == pytest.approx(0.75)

    def test_auc_single_class(self):
        y = np.ones((3, 1))
        assert np.isnan(pb.AUC().compute(np.ones(3), y, y, y))

    def test_get_metric(self):
        assert isinstance(pb.get_metric("auc"), pb.AUC)
        with pytest.raises(ValueError, match="Unknown metric"):
            pb.get_metric("r2")


class TestEvaluate:
    """Metrics over partitioned scores."""

    def _setup(self, n=60, num_partitions=4):
        np.random.seed(42)
        labels = (np.random.rand(n) > 0.5).astype(float)
        raws = np.random.randn(n)
        weights = np.random.rand(n) + 0.5
        rows = [(weights[i], [labels[i]], np.array([1, 2])) for i in range(n)]
        data = pb.PartitionedDataset.from_sequence(rows, num_partitions)
        blocks = data.map_partitions(lambda _, part: pb.blockify(part, 7)).persist()
        raw_by_row = iter(raws)
        raw_scores = blocks.map(
            lambda b: np.array([[next(raw_by_row)] for _ in range(b.size)])
        ).persist()
        raw_scores.collect()
        return blocks, raw_scores, weights, labels, raws

    def test_matches_direct_computation(self):
        blocks, raw_scores, w, y, raw = self._setup()
        config = pb.BoostConfig(objective=pb.Logistic(),
                                eval_funcs=[pb.AUC(), pb.LogLoss(), pb.ErrorRate()])
        result = pb.evaluate(blocks, raw_scores, config)
        assert list(result) == ["auc", "logloss", "error"]

        p = 1.0 / (1.0 + np.exp(-raw))
        expected_ll = np.sum(w * -(y * np.log(p) + (1 - y) * np.log(1 - p))) / w.sum()
        assert result["logloss"] == pytest.approx(expected_ll)

        from sklearn.metrics import roc_auc_score
        assert result["auc"] == pytest.approx(roc_auc_score(y, p, sample_weight=w))

    def test_independent_of_partitioning(self):
        config = pb.BoostConfig(objective=pb.Logistic(), eval_funcs=[pb.LogLoss()],
                                aggregation_depth=3)
        a = pb.evaluate(*self._setup(num_partitions=1)[:2], config)
        b = pb.evaluate(*self._setup(num_partitions=9)[:2], config)
        assert a["logloss"] == pytest.approx(b["logloss"])

    def test_no_metrics(self):
        blocks, raw_scores, *_ = self._setup()
        config = pb.BoostConfig(objective=pb.Logistic())
        assert pb.evaluate(blocks, raw_scores, config) == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
