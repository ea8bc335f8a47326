"""Mutable state of one boosting run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ._tree import TreeModel


@dataclass
class BoostingState:
    """Accumulators threaded through the boosting loop.

    ``trees[i]`` is weighted by ``weights[i]``; both lists only ever grow,
    although DART may rescale existing weights.
    """

    trees: list[TreeModel] = field(default_factory=list)
    weights: list[float] = field(default_factory=list)
    train_history: list[dict[str, float]] = field(default_factory=list)
    test_history: list[dict[str, float]] = field(default_factory=list)
    iteration: int = 0
    finished: bool = False

    def __post_init__(self):
        assert len(self.trees) == len(self.weights), (
            f"{len(self.trees)} trees but {len(self.weights)} weights"
        )

    @property
    def num_trees(self) -> int:
        return len(self.trees)
