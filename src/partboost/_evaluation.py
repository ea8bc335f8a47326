"""Model evaluation over partitioned raw scores."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ._config import BoostConfig
    from ._core._blocks import InstanceBlock
    from ._distributed import PartitionedDataset


def score_block(
    block: InstanceBlock, raw: NDArray, config: BoostConfig
) -> tuple[NDArray, NDArray, NDArray, NDArray]:
    """``(weights, labels, raws, scores)`` of one block.

    Raw scores are truncated to ``raw_size`` (dropping the DART suffix) before
    the objective's transform.
    """
    assert raw.shape[0] == block.size, (
        f"raw score block has {raw.shape[0]} rows, instance block has {block.size}"
    )
    raws = np.asarray(raw[:, :config.raw_size], dtype=np.float64)
    scores = np.asarray(config.objective.transform(raws), dtype=np.float64)
    return (
        np.asarray(block.weights, dtype=np.float64),
        np.asarray(block.label_matrix, dtype=np.float64),
        raws,
        scores,
    )


def evaluate(
    blocks: PartitionedDataset,
    raw_scores: PartitionedDataset,
    config: BoostConfig,
) -> dict[str, float]:
    """Compute every configured metric.

    Incremental metrics fold each partition into a partial state, merged in a
    tree of depth ``config.aggregation_depth``. Batch metrics see all rows at
    once.
    """
    if not config.eval_funcs:
        return {}

    scored = blocks.zip(raw_scores).map(
        lambda pair: score_block(pair[0], pair[1], config),
        name="Evaluation dataset (weight, label, raw, score)",
    )

    batch = config.batch_metrics
    if batch:
        scored.persist()

    result: dict[str, float] = {}

    incremental = config.incremental_metrics
    if incremental:

        def _seq(states, t):
            return [m.update(s, *t) for m, s in zip(incremental, states)]

        def _comb(a, b):
            return [m.merge(x, y) for m, x, y in zip(incremental, a, b)]

        states = scored.tree_aggregate(
            [m.init() for m in incremental], _seq, _comb, depth=config.aggregation_depth
        )
        for m, s in zip(incremental, states):
            result[m.name] = float(m.result(s))

    if batch:
        parts = scored.collect()
        if parts:
            columns = [np.concatenate([p[i] for p in parts]) for i in range(4)]
            for m in batch:
                result[m.name] = float(m.compute(*columns))
        else:
            for m in batch:
                result[m.name] = float("nan")
        scored.unpersist()

    # keep the configured order
    return {m.name: result[m.name] for m in config.eval_funcs}
