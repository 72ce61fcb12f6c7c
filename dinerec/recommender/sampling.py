"""Negative sampling for implicit-feedback training."""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Set, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_NEGATIVE_RATIO = 4
DEFAULT_MAX_ATTEMPTS = 50


@dataclass(frozen=True)
class TrainingSamples:
    """Parallel arrays of (user index, item index, label)."""

    users: np.ndarray
    items: np.ndarray
    labels: np.ndarray
    positive_count: int
    negative_count: int

    def __len__(self) -> int:
        return len(self.labels)


def generate_training_samples(
    positive_pairs: Iterable[Tuple[int, int]],
    num_users: int,
    num_items: int,
    negative_ratio: int = DEFAULT_NEGATIVE_RATIO,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    rng: Optional[np.random.Generator] = None,
) -> TrainingSamples:
    """Build shuffled label-1 and label-0 samples.

    Every positive pair becomes a label-1 sample. For each positive,
    ``negative_ratio`` uniformly random pairs are drawn that are neither a
    positive nor an already drawn negative. A collision is redrawn at most
    ``max_attempts`` times; after that the negative is skipped, so nearly
    dense matrices simply yield fewer negatives.

    Args:
        positive_pairs: Observed (user_idx, item_idx) pairs.
        num_users: Size of the user index space.
        num_items: Size of the item index space.
        negative_ratio: Negatives to draw per positive.
        max_attempts: Draws allowed per negative before giving up.
        rng: Random generator (default: fresh unseeded generator).

    Returns:
        Shuffled ``TrainingSamples``.
    """
    rng = rng if rng is not None else np.random.default_rng()
    positives: Set[Tuple[int, int]] = {(int(u), int(i)) for u, i in positive_pairs}

    negatives: Set[Tuple[int, int]] = set()
    skipped = 0
    if num_users > 0 and num_items > 0:
        for _ in range(len(positives) * negative_ratio):
            for _attempt in range(max_attempts):
                pair = (int(rng.integers(num_users)), int(rng.integers(num_items)))
                if pair not in positives and pair not in negatives:
                    negatives.add(pair)
                    break
            else:
                skipped += 1

    if skipped:
        logger.warning(
            f"Skipped {skipped} negative samples after {max_attempts} attempts each; "
            "the interaction matrix is nearly dense"
        )

    pairs = sorted(positives) + sorted(negatives)
    labels = np.concatenate([
        np.ones(len(positives), dtype=np.float32),
        np.zeros(len(negatives), dtype=np.float32),
    ])
    if pairs:
        pair_array = np.array(pairs, dtype=np.int64)
    else:
        pair_array = np.empty((0, 2), dtype=np.int64)

    order = rng.permutation(len(pairs))
    return TrainingSamples(
        users=pair_array[order, 0],
        items=pair_array[order, 1],
        labels=labels[order],
        positive_count=len(positives),
        negative_count=len(negatives),
    )
