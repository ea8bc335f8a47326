"""Boosting loop over partitioned data.

:func:`boost` runs the iteration state machine::

    Init -> Iterating -> Finished

Every iteration runs strictly in order: DART dropout selection, gradient
computation with row sampling, tree growth by the trainer, appending and
re-weighting trees, raw score updates (train and test), evaluation, callbacks.
Training finishes after ``max_iter`` iterations, when the trainer returns no
tree at all, or when a callback asks to stop.
"""

from __future__ import annotations

import copy
import logging
import math
import time
from typing import TYPE_CHECKING, Callable

import numpy as np

from ._core._blocks import blockify_dataset
from ._core._dart import append_trees, select_dropped
from ._core._gradients import compute_gradient_blocks
from ._core._growth import HistogramTreeTrainer, TrainerContext
from ._core._scores import compute_raw_scores, update_raw_scores
from ._core._state import BoostingState
from ._core._tree import leaf_tree
from ._distributed import PeriodicCheckpointer
from ._evaluation import evaluate
from ._model import GBMModel

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ._config import BoostConfig
    from ._core._growth import TreeTrainer
    from ._core._tree import TreeModel
    from ._discretizer import QuantileDiscretizer
    from ._distributed import Checkpointer, PartitionedDataset

logger = logging.getLogger(__name__)


# =============================================================================
# Setup helpers
# =============================================================================

def compute_raw_base(
    data: PartitionedDataset,
    config: BoostConfig,
) -> NDArray:
    """Raw base score from ``config.base_score``, or from the weighted mean label.

    ``data`` holds ``(weight, label, vector)`` rows.
    """
    objective = config.objective
    if config.base_score is not None:
        score = np.asarray(config.base_score, dtype=np.float64)
    else:
        total_weight, weighted_sum = data.tree_aggregate(
            (0.0, 0.0),
            lambda acc, row: (acc[0] + row[0], acc[1] + row[0] * np.asarray(row[1], dtype=np.float64)),
            lambda a, b: (a[0] + b[0], a[1] + b[1]),
            depth=config.aggregation_depth,
        )
        if total_weight <= 0:
            raise ValueError("Sum of instance weights must be positive")
        score = np.atleast_1d(weighted_sum / total_weight)
        logger.info("Average label: %s", np.array2string(score, precision=6))

    raw = np.atleast_1d(np.asarray(objective.inverse_transform(score), dtype=np.float64))
    if raw.shape[0] != config.raw_size:
        raise ValueError(
            f"base score has {raw.shape[0]} entries, objective {objective!r} "
            f"expects {config.raw_size}"
        )
    return raw


def make_trainer_context(config: BoostConfig, num_cols: int, iteration: int) -> TrainerContext:
    """Trainer context with per-tree column selectors seeded by ``(seed, iteration)``.

    All trees of one unit share a selector. A selector is always a sorted
    ``int64`` array of column ids, whatever the number of sampled columns. The
    trainer only iterates over the ids, so no hashed form is built for wide
    selections.
    """
    num_units = config.base_model_parallelism
    num_trees = num_units * config.raw_size

    if config.col_sample_by_tree == 1:
        selectors = (None,) * num_trees
    else:
        rng = np.random.default_rng([config.seed, iteration])
        num_selected = max(int(math.ceil(num_cols * config.col_sample_by_tree)), 1)
        selectors = []
        for _ in range(num_units):
            selected = np.sort(rng.permutation(num_cols)[:num_selected]).astype(np.int64)
            selectors.extend([selected] * config.raw_size)
        selectors = tuple(selectors)
        logger.debug("Iteration %d: column selectors %s", iteration, [s.tolist() for s in selectors])

    return TrainerContext(iteration, num_trees, config.raw_size, selectors)


def _count_blocks(blocks: PartitionedDataset, depth: int) -> tuple[int, int]:
    return blocks.tree_aggregate(
        (0, 0),
        lambda acc, block: (acc[0] + block.size, acc[1] + 1),
        lambda a, b: (a[0] + b[0], a[1] + b[1]),
        depth=depth,
    )


def _to_blocks(
    data: PartitionedDataset,
    discretizer: QuantileDiscretizer,
    config: BoostConfig,
    name: str,
) -> PartitionedDataset:
    """Bin raw rows and group each partition into instance blocks."""
    binned = data.map(
        lambda row: (row[0], row[1], discretizer.transform(row[2])),
        name=f"{name} binned",
    )
    return blockify_dataset(binned, config.block_size, name=name).persist()


# =============================================================================
# One iteration
# =============================================================================

def build_trees(
    blocks: PartitionedDataset,
    raw_scores: PartitionedDataset,
    state: BoostingState,
    raw_base: NDArray,
    config: BoostConfig,
    trainer: TreeTrainer,
    num_cols: int,
    dropped: frozenset[int],
) -> list[TreeModel | None]:
    """Compute sampled gradients and grow the trees of one iteration."""
    iteration = state.iteration
    num_trees = config.base_model_parallelism * config.raw_size
    logger.info("Iteration %d: starting to create next %d trees", iteration, num_trees)

    rows, grad_blocks = compute_gradient_blocks(
        blocks, raw_scores, state.weights, raw_base, config, iteration, dropped
    )
    context = make_trainer_context(config, num_cols, iteration)
    try:
        trees = trainer.train(rows, context)
    finally:
        grad_blocks.unpersist()

    assert len(trees) == num_trees, f"trainer returned {len(trees)} trees, expected {num_trees}"
    return list(trees)


# =============================================================================
# Boosting loop
# =============================================================================

def boost(
    train: PartitionedDataset,
    test: PartitionedDataset | None,
    config: BoostConfig,
    discretizer: QuantileDiscretizer,
    trainer: TreeTrainer | None = None,
    init_model: GBMModel | None = None,
    checkpointer_factory: Callable[[], Checkpointer] | None = None,
) -> tuple[GBMModel, BoostingState]:
    """Train a boosted ensemble.

    Args:
        train: ``(weight, label_vector, raw_vector)`` rows.
        test: Validation rows in the same format, or ``None``.
        config: Boosting configuration (validated here).
        discretizer: Fitted discretizer.
        trainer: Tree trainer; a :class:`HistogramTreeTrainer` built from
            ``config`` by default.
        init_model: Model to continue training from.
        checkpointer_factory: Builds one checkpointer per raw score chain.

    Returns:
        The final model and the state of the run (histories, iterations).
    """
    config.validate()
    validation = test is not None
    raw_size = config.raw_size

    if trainer is None:
        trainer = HistogramTreeTrainer.from_config(config, discretizer.num_bins)
    if checkpointer_factory is None:
        def checkpointer_factory():
            return PeriodicCheckpointer(config.checkpoint_interval, config.checkpoint_dir)

    if init_model is not None:
        if init_model.raw_size != raw_size:
            raise ValueError(
                f"init_model has raw_size {init_model.raw_size}, objective expects {raw_size}"
            )
        if config.base_score is not None:
            logger.warning("base_score is ignored when continuing from an initial model")
        raw_base = np.array(init_model.raw_base)
    else:
        raw_base = compute_raw_base(train, config)
    logger.info("Raw base score: %s", np.array2string(raw_base, precision=6))

    train_blocks = _to_blocks(train, discretizer, config, "Train blocks")
    num_instances, num_blocks = _count_blocks(train_blocks, config.aggregation_depth)
    if num_instances == 0:
        raise ValueError("Training dataset is empty")
    logger.info("Train data: %d instances, %d blocks", num_instances, num_blocks)

    test_blocks = None
    if validation:
        test_blocks = _to_blocks(test, discretizer, config, "Test blocks")
        num_instances, num_blocks = _count_blocks(test_blocks, config.aggregation_depth)
        logger.info("Test data: %d instances, %d blocks", num_instances, num_blocks)

    state = BoostingState()
    if init_model is not None:
        state.trees.extend(init_model.trees)
        state.weights.extend(init_model.weights)

    train_raw = compute_raw_scores(
        train_blocks, state.trees, state.weights, raw_base, config
    )
    train_raw.name = "Train raw scores (initial)"
    train_checkpointer = checkpointer_factory()
    if state.trees:
        train_checkpointer.accept(train_raw)

    test_raw = None
    test_checkpointer = None
    if validation:
        test_raw = compute_raw_scores(
            test_blocks, state.trees, state.weights, raw_base, config
        )
        test_raw.name = "Test raw scores (initial)"
        test_checkpointer = checkpointer_factory()
        if state.trees:
            test_checkpointer.accept(test_raw)

    dart_rng = np.random.default_rng(config.seed)

    try:
        while not state.finished and state.iteration < config.max_iter:
            iteration = state.iteration
            prefix = f"Iteration {iteration}:"

            dropped: frozenset[int] = frozenset()
            if config.is_dart:
                dropped = select_dropped(state.num_trees, raw_size, config, dart_rng)
                if dropped:
                    logger.info("%s %d trees dropped", prefix, len(dropped))
                else:
                    logger.info("%s skip drop", prefix)

            logger.info("%s start", prefix)
            start = time.perf_counter()
            new_trees = build_trees(
                train_blocks, train_raw, state, raw_base, config,
                trainer, discretizer.num_cols, dropped,
            )
            logger.info("%s finish, duration: %.3f sec", prefix, time.perf_counter() - start)

            if all(t is None for t in new_trees):
                logger.info("%s no more tree built, training finished", prefix)
                state.finished = True
            else:
                # trees of one unit stay aligned with raw dimensions
                new_trees = [leaf_tree(0.0) if t is None else t for t in new_trees]
                append_trees(state, new_trees, dropped, config)
                keep_weights = not config.is_dart or not dropped

                train_raw = update_raw_scores(
                    train_blocks, train_raw, new_trees, state.weights, raw_base, config, keep_weights
                )
                train_raw.name = f"Train raw scores (iteration {iteration})"
                train_checkpointer.accept(train_raw)

                if config.eval_funcs:
                    metrics = evaluate(train_blocks, train_raw, config)
                    state.train_history.append(metrics)
                    logger.info("%s train metrics %s", prefix, metrics)

                if validation:
                    test_raw = update_raw_scores(
                        test_blocks, test_raw, new_trees, state.weights, raw_base, config, keep_weights
                    )
                    test_raw.name = f"Test raw scores (iteration {iteration})"
                    test_checkpointer.accept(test_raw)

                    metrics = evaluate(test_blocks, test_raw, config)
                    state.test_history.append(metrics)
                    logger.info("%s test metrics %s", prefix, metrics)

                if config.callbacks:
                    snapshot = GBMModel(
                        config.objective,
                        copy.deepcopy(discretizer),
                        raw_base,
                        tuple(state.trees),
                        tuple(state.weights),
                    )
                    for callback in config.callbacks:
                        if callback.compute(
                            config,
                            snapshot,
                            iteration + 1,
                            [dict(m) for m in state.train_history],
                            [dict(m) for m in state.test_history],
                        ):
                            state.finished = True
                            logger.info("%s callback %s stop training", prefix, callback.name)

            logger.info("%s finished, %d trees now", prefix, state.num_trees)
            state.iteration += 1

        if state.iteration >= config.max_iter:
            logger.info("max_iter=%d reached, training finished", config.max_iter)
    finally:
        train_blocks.unpersist()
        train_checkpointer.cleanup()
        if validation:
            test_blocks.unpersist()
            test_checkpointer.cleanup()

    model = GBMModel(config.objective, discretizer, raw_base, state.trees, state.weights)
    return model, state
