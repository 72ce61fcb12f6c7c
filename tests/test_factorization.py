"""Tests for negative sampling and matrix factorization training."""

from datetime import datetime, timedelta

import numpy as np
import pytest

from dinerec.exceptions import ModelUnavailableError, TrainingCancelledError
from dinerec.recommender.data import Interaction
from dinerec.recommender.factorization import (
    ITERATION_MODES,
    MatrixFactorizationConfig,
    MatrixFactorizationModel,
    evaluate_model,
    train_matrix_factorization,
)
from dinerec.recommender.matrix import InteractionMatrix, InteractionMatrixBuilder
from dinerec.recommender.sampling import generate_training_samples


@pytest.fixture
def matrix(data_source):
    return InteractionMatrixBuilder(data_source).build()


@pytest.fixture
def model(matrix):
    return train_matrix_factorization(matrix, MatrixFactorizationConfig(rank=4, iterations=20))


# Negative sampling

@pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
def test_negatives_never_collide_with_positives(seed):
    rng = np.random.default_rng(seed)
    positives = {(int(rng.integers(8)), int(rng.integers(12))) for _ in range(20)}

    samples = generate_training_samples(positives, 8, 12, negative_ratio=3, rng=rng)

    pairs = list(zip(samples.users.tolist(), samples.items.tolist()))
    negatives = [p for p, label in zip(pairs, samples.labels.tolist()) if label == 0.0]
    assert samples.positive_count == len(positives)
    assert not set(negatives) & positives
    assert len(set(negatives)) == len(negatives)
    assert len(samples) == samples.positive_count + samples.negative_count


def test_nearly_dense_matrix_yields_fewer_negatives():
    positives = [(0, 0), (0, 1), (1, 0)]
    samples = generate_training_samples(positives, 2, 2, negative_ratio=4, max_attempts=20,
                                        rng=np.random.default_rng(0))

    assert samples.positive_count == 3
    assert samples.negative_count <= 1
    assert samples.labels.sum() == 3


def test_no_positives_gives_empty_samples():
    samples = generate_training_samples([], 5, 5)
    assert len(samples) == 0
    assert samples.users.shape == (0,)


# Matrix factorization

def test_config_validation():
    with pytest.raises(ValueError):
        MatrixFactorizationConfig(iteration_mode="full")
    with pytest.raises(ValueError):
        MatrixFactorizationConfig(rank=0)


def test_predictions_are_probabilities(model, matrix):
    for u in range(matrix.num_users):
        for i in range(matrix.num_items):
            assert 0.0 <= model.predict(u, i) <= 1.0


def test_out_of_range_prediction_is_zero(model):
    assert model.predict(-1, 0) == 0.0
    assert model.predict(0, 10_000) == 0.0


def test_untrained_model_predicts_zero():
    model = MatrixFactorizationModel.empty()
    assert not model.is_trained
    assert model.predict(0, 0) == 0.0
    with pytest.raises(ModelUnavailableError):
        model.score_user("u1")


def test_empty_matrix_trains_nothing():
    model = train_matrix_factorization(InteractionMatrix())
    assert not model.is_trained
    assert model.loss_history == ()


def test_factors_are_read_only(model):
    assert not model.user_factors.flags.writeable
    with pytest.raises(ValueError):
        model.user_factors[0, 0] = 1.0


LOSS_SLACK = 1e-4


def random_matrix(seed, max_users=8, max_items=10):
    """A random small interaction matrix with at least one order per user."""
    rng = np.random.default_rng(seed)
    num_users = int(rng.integers(3, max_users + 1))
    num_items = int(rng.integers(3, max_items + 1))
    now = datetime.now()
    interactions = []
    for u in range(num_users):
        ordered = rng.choice(num_items, size=int(rng.integers(1, num_items)), replace=False)
        for i in ordered:
            interactions.append(Interaction(
                f"u{u}",
                f"r{i}",
                now - timedelta(days=int(rng.integers(0, 60))),
                float(rng.uniform(200, 3000)),
                float(rng.integers(1, 6)) if rng.random() < 0.5 else None,
                int(rng.integers(1, 5)),
            ))
    return InteractionMatrixBuilder().build(interactions, now=now)


@pytest.mark.parametrize("iteration_mode", ITERATION_MODES)
@pytest.mark.parametrize("seed", range(8))
def test_loss_is_non_increasing_across_epochs(iteration_mode, seed):
    matrix = random_matrix(seed)
    config = MatrixFactorizationConfig(
        rank=4, iterations=30, iteration_mode=iteration_mode, random_state=seed
    )
    model = train_matrix_factorization(matrix, config)

    history = model.loss_history
    assert len(history) >= 2
    assert all(np.isfinite(history))
    for previous, current in zip(history, history[1:]):
        assert current <= previous + LOSS_SLACK
    assert not model.diverged


def test_training_is_reproducible(matrix):
    config = MatrixFactorizationConfig(rank=3, iterations=5, random_state=11)
    first = train_matrix_factorization(matrix, config)
    second = train_matrix_factorization(matrix, config)
    np.testing.assert_allclose(first.user_factors, second.user_factors)


def test_progress_reports_every_epoch(matrix):
    events = []
    config = MatrixFactorizationConfig(rank=3, iterations=4, tolerance=0.0)
    train_matrix_factorization(matrix, config, progress=lambda *args: events.append(args))

    assert [e[0] for e in events] == [1, 2, 3, 4]
    assert all(e[1] == 4 and e[3] is None for e in events)


def test_cancellation_raises(matrix):
    with pytest.raises(TrainingCancelledError) as exc_info:
        train_matrix_factorization(matrix, should_stop=lambda: True)
    assert exc_info.value.details["epoch"] == 0


def test_divergence_keeps_best_weights(matrix):
    config = MatrixFactorizationConfig(rank=4, iterations=20, learning_rate=50.0, iteration_mode="dense")
    model = train_matrix_factorization(matrix, config)

    assert model.diverged
    assert model.is_trained
    assert all(np.isfinite(model.loss_history))


def test_recommend_respects_exclusions_and_candidates(model):
    ranked = model.recommend("u1", 3, exclude=["r1"])
    ids = [item_id for item_id, _ in ranked]
    assert len(ids) == 3
    assert "r1" not in ids
    scores = [score for _, score in ranked]
    assert scores == sorted(scores, reverse=True)

    limited = model.recommend("u1", 10, candidate_ids=["r2", "r3", "unknown"])
    assert {item_id for item_id, _ in limited} == {"r2", "r3"}


def test_unknown_user_is_unavailable(model):
    with pytest.raises(ModelUnavailableError) as exc_info:
        model.recommend("stranger", 5)
    assert exc_info.value.user_id == "stranger"


def test_evaluate_model(model, matrix):
    metrics = evaluate_model(model, matrix, k=3)

    assert set(metrics) == {"precision_at_3", "recall_at_3", "users_evaluated"}
    assert 0.0 <= metrics["precision_at_3"] <= 1.0
    assert 0.0 <= metrics["recall_at_3"] <= 1.0


def test_model_metrics(model):
    metrics = model.metrics()
    assert metrics["rank"] == 4
    assert metrics["epochs"] == len(model.loss_history)
    assert metrics["final_loss"] == model.loss_history[-1]
