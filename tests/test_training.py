"""Tests for the background training manager and snapshot publishing."""

import threading

import pytest

from conftest import make_source, small_training_config
from dinerec.config import Settings
from dinerec.exceptions import DataInsufficientError, TrainingCancelledError, TrainingInProgressError
from dinerec.recommender import training as training_module
from dinerec.recommender.data import InMemoryDataSource, Interaction
from dinerec.recommender.matrix import InteractionMatrixBuilder
from dinerec.recommender.service import RecommendationService
from dinerec.recommender.training import (
    STATE_CANCELLED,
    STATE_COMPLETED,
    STATE_FAILED,
    STATE_IDLE,
    ModelSnapshot,
    TrainingConfig,
    TrainingManager,
    check_training_data,
    train_snapshot,
)

WAIT_SECONDS = 30


@pytest.fixture
def gate(monkeypatch):
    """Replace the trainer with one that blocks until the gate opens."""
    release = threading.Event()
    started = threading.Event()

    def blocking_train(matrix, config, on_progress=None, should_stop=None):
        started.set()
        release.wait(WAIT_SECONDS)
        if should_stop is not None and should_stop():
            raise TrainingCancelledError("matrix_factorization", 1)
        return ModelSnapshot.empty()

    monkeypatch.setattr(training_module, "train_snapshot", blocking_train)
    return started, release


def test_successful_run_publishes_snapshot(service):
    assert not service.snapshot.trained

    handle = service.train_models(small_training_config(), background=False)

    assert handle.state == STATE_COMPLETED
    assert handle.done
    assert handle.snapshot is service.snapshot
    assert service.snapshot.trained

    status = service.get_model_status()
    assert status["trained"]
    assert status["user_count"] == 6
    assert status["item_count"] == 7
    assert status["last_trained_at"] is not None
    assert "precision_at_5" in status["last_metrics"]["matrix_factorization"]
    assert "auc" in status["last_metrics"]["neural"]


def test_progress_events_are_recorded(service):
    handle = service.train_models(small_training_config(), background=False)

    models = {event.model for event in handle.events}
    assert models == {"matrix_factorization", "neural"}
    last = handle.status()
    assert last["state"] == STATE_COMPLETED
    assert last["events"] == len(handle.events)
    assert handle.events[-1].to_dict()["model"] == "neural"


def test_background_run_completes(service):
    handle = service.train_models(small_training_config(train_neural=False))

    assert handle.wait(WAIT_SECONDS)
    assert handle.state == STATE_COMPLETED
    assert service.snapshot.mf_model.is_trained
    assert not service.snapshot.neural_model.is_trained
    assert not service.training.running


def test_second_run_is_rejected_while_one_is_active(gate):
    started, release = gate
    published = []
    manager = TrainingManager(make_source(), on_complete=published.append)

    handle = manager.start(small_training_config())
    assert started.wait(WAIT_SECONDS)
    assert manager.running

    with pytest.raises(TrainingInProgressError) as exc_info:
        manager.start(small_training_config())
    assert exc_info.value.status_code == 409

    release.set()
    assert handle.wait(WAIT_SECONDS)
    assert handle.state == STATE_COMPLETED
    assert len(published) == 1
    assert not manager.running


def test_cancelled_run_publishes_nothing(gate):
    started, release = gate
    published = []
    manager = TrainingManager(make_source(), on_complete=published.append)

    handle = manager.start(small_training_config())
    assert started.wait(WAIT_SECONDS)
    assert manager.cancel()
    release.set()

    assert handle.wait(WAIT_SECONDS)
    assert handle.state == STATE_CANCELLED
    assert handle.snapshot is None
    assert published == []
    assert not manager.cancel()


def test_cancelled_run_keeps_previous_snapshot(trained_service, gate):
    started, release = gate
    previous = trained_service.snapshot

    handle = trained_service.train_models(small_training_config())
    assert started.wait(WAIT_SECONDS)
    trained_service.cancel_training()
    release.set()

    assert handle.wait(WAIT_SECONDS)
    assert trained_service.snapshot is previous
    assert trained_service.get_training_status()["state"] == STATE_CANCELLED


def test_failed_run_reports_error(monkeypatch):
    def broken_train(matrix, config, on_progress=None, should_stop=None):
        raise RuntimeError("out of memory")

    monkeypatch.setattr(training_module, "train_snapshot", broken_train)
    published = []
    manager = TrainingManager(make_source(), on_complete=published.append)

    handle = manager.start(small_training_config(), background=False)

    assert handle.state == STATE_FAILED
    assert "out of memory" in handle.error
    assert published == []
    assert not manager.running


def test_empty_data_is_a_no_op():
    service = RecommendationService(InMemoryDataSource(), Settings())

    handle = service.train_models(small_training_config())

    assert handle.done
    assert handle.state == STATE_COMPLETED
    assert handle.snapshot is None
    assert not service.snapshot.trained
    assert not service.get_model_status()["trained"]
    assert not service.training.running


def test_insufficient_data_is_rejected(data_source, catalog):
    sparse = InMemoryDataSource(
        restaurants=catalog,
        interactions=[
            Interaction("a", "r1", order.timestamp)
            for order in data_source.get_order_history("u1", limit=3)
        ],
    )
    manager = TrainingManager(sparse, on_complete=lambda snapshot: None)

    with pytest.raises(DataInsufficientError) as exc_info:
        manager.start(small_training_config())

    assert exc_info.value.status_code == 422
    assert exc_info.value.details["counts"]["users"] == 1
    assert not manager.running


def test_check_training_data_lists_every_shortfall(data_source):
    matrix = InteractionMatrixBuilder(data_source).build()
    config = TrainingConfig(min_users=100, min_items=3, min_interactions=1000)

    with pytest.raises(DataInsufficientError) as exc_info:
        check_training_data(matrix, config)

    message = exc_info.value.message
    assert "users" in message
    assert "interactions" in message
    assert "items" not in message


def test_train_snapshot_honors_cancellation(data_source):
    matrix = InteractionMatrixBuilder(data_source).build()
    with pytest.raises(TrainingCancelledError):
        train_snapshot(matrix, small_training_config(), should_stop=lambda: True)


def test_idle_status(service):
    assert service.get_training_status() == {"job_id": None, "state": STATE_IDLE}
    assert not service.cancel_training()


def test_training_config_from_settings():
    config = TrainingConfig.from_settings(Settings(min_training_users=2), train_neural=False)
    assert config.min_users == 2
    assert not config.train_neural


def test_neural_toggle_comes_from_settings(monkeypatch):
    assert TrainingConfig.from_settings(Settings()).train_neural

    monkeypatch.setenv("DINEREC_TRAIN_NEURAL", "false")
    settings = Settings()
    assert settings.train_neural is False
    assert not TrainingConfig.from_settings(settings).train_neural
    assert TrainingConfig.from_settings(settings, train_neural=True).train_neural
