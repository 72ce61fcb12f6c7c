"""Utility functions for model artifact management.

Snapshots are stored as a directory of files: the interaction matrix, the
matrix factorization model and the snapshot metadata are written with
joblib, the neural network as a torch checkpoint.
"""

import logging
from pathlib import Path
from typing import Dict

import joblib
import torch

from dinerec.recommender.neural import NeuralEmbeddingModel
from dinerec.recommender.training import ModelSnapshot

# Configure module logger
logger = logging.getLogger(__name__)

# Model artifact filenames
MATRIX_FILENAME = "interaction_matrix.joblib"
MF_MODEL_FILENAME = "mf_model.joblib"
NEURAL_MODEL_FILENAME = "neural_model.pt"
METADATA_FILENAME = "snapshot_meta.joblib"


def get_model_paths(model_dir: str) -> Dict[str, Path]:
    """Get file paths for model artifacts without loading them."""
    model_path = Path(model_dir)
    return {
        "matrix": model_path / MATRIX_FILENAME,
        "mf_model": model_path / MF_MODEL_FILENAME,
        "neural_model": model_path / NEURAL_MODEL_FILENAME,
        "metadata": model_path / METADATA_FILENAME,
    }


def save_model_artifacts(snapshot: ModelSnapshot, output_dir: str) -> None:
    """Save a trained snapshot to disk.

    Creates the directory if it doesn't exist. The neural checkpoint is
    only written when the snapshot has a trained network.

    Args:
        snapshot: Snapshot to save.
        output_dir: Directory path where artifacts will be saved.

    Raises:
        OSError: If unable to create output directory or save files.
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    paths = get_model_paths(output_dir)

    logger.info(f"Saving model artifacts to {output_dir}")

    joblib.dump(snapshot.matrix, paths["matrix"])
    logger.info(f"Saved interaction matrix to {paths['matrix']}")

    joblib.dump(snapshot.mf_model, paths["mf_model"])
    logger.info(f"Saved matrix factorization model to {paths['mf_model']}")

    if snapshot.neural_model.is_trained:
        torch.save(snapshot.neural_model.to_state(), paths["neural_model"])
        logger.info(f"Saved neural model to {paths['neural_model']}")
    elif paths["neural_model"].exists():
        paths["neural_model"].unlink()

    joblib.dump(
        {"trained_at": snapshot.trained_at, "metrics": snapshot.metrics},
        paths["metadata"],
    )


def load_model_artifacts(model_dir: str) -> ModelSnapshot:
    """Load a snapshot saved by ``save_model_artifacts``.

    Raises:
        FileNotFoundError: If the directory or a required artifact is missing.
    """
    model_path = Path(model_dir)
    if not model_path.exists():
        raise FileNotFoundError(f"Model directory does not exist: {model_dir}")

    paths = get_model_paths(model_dir)
    for key in ("matrix", "mf_model", "metadata"):
        if not paths[key].exists():
            raise FileNotFoundError(f"Model artifact not found: {paths[key]}")

    logger.info(f"Loading model artifacts from {model_dir}")

    matrix = joblib.load(paths["matrix"])
    mf_model = joblib.load(paths["mf_model"])
    # Unpickled arrays come back writeable
    mf_model.user_factors.setflags(write=False)
    mf_model.item_factors.setflags(write=False)
    metadata = joblib.load(paths["metadata"])

    if paths["neural_model"].exists():
        state = torch.load(paths["neural_model"], weights_only=True)
        neural_model = NeuralEmbeddingModel.from_state(state)
    else:
        neural_model = NeuralEmbeddingModel.empty()

    logger.info(
        f"Loaded snapshot: {matrix.num_users} users, {matrix.num_items} restaurants, "
        f"neural model {'present' if neural_model.is_trained else 'absent'}"
    )

    return ModelSnapshot(
        matrix=matrix,
        mf_model=mf_model,
        neural_model=neural_model,
        trained_at=metadata.get("trained_at"),
        metrics=metadata.get("metrics", {}),
    )


def check_model_exists(model_dir: str) -> bool:
    """Check if the required model artifacts exist."""
    paths = get_model_paths(model_dir)
    return all(paths[key].exists() for key in ("matrix", "mf_model", "metadata"))
