"""Command-line interface for training the recommendation models.

This script loads restaurant, user and order CSVs, trains the matrix
factorization and neural models synchronously and saves the snapshot.

Example:
    Train with default settings:
        $ python scripts/train_model.py data

    Train with custom parameters:
        $ python scripts/train_model.py data \\
            --output-dir models/production \\
            --rank 16 \\
            --iterations 100 \\
            --skip-neural
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dinerec.config import settings
from dinerec.exceptions import DataInsufficientError
from dinerec.recommender.data import InMemoryDataSource
from dinerec.recommender.factorization import (
    DEFAULT_ITERATIONS,
    DEFAULT_RANDOM_STATE,
    DEFAULT_RANK,
    MatrixFactorizationConfig,
)
from dinerec.recommender.neural import NeuralConfig
from dinerec.recommender.service import RecommendationService
from dinerec.recommender.training import STATE_COMPLETED, TrainingConfig


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the script.

    Args:
        verbose: If True, set log level to DEBUG. Otherwise, use INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Train the restaurant recommendation models from CSV data.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Train with default settings
  python scripts/train_model.py data

  # Dense matrix factorization, no neural model
  python scripts/train_model.py data --iteration-mode dense --skip-neural

  # Train with verbose logging
  python scripts/train_model.py data --verbose
        """,
    )

    parser.add_argument(
        "data_dir",
        type=str,
        help="Directory containing restaurants.csv, orders.csv and optionally users.csv",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=settings.model_dir,
        help=f"Directory where model artifacts will be saved (default: {settings.model_dir})",
    )
    parser.add_argument(
        "--rank",
        type=int,
        default=DEFAULT_RANK,
        help=f"Latent factors for matrix factorization (default: {DEFAULT_RANK})",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=DEFAULT_ITERATIONS,
        help=f"Maximum matrix factorization epochs (default: {DEFAULT_ITERATIONS})",
    )
    parser.add_argument(
        "--iteration-mode",
        choices=["sampled", "dense"],
        default="sampled",
        help="Visit observed cells plus sampled negatives, or every cell (default: sampled)",
    )
    parser.add_argument(
        "--epochs",
        type=int,
        default=NeuralConfig.epochs,
        help=f"Neural model epochs (default: {NeuralConfig.epochs})",
    )
    parser.add_argument(
        "--skip-neural",
        action="store_true",
        help="Only train the matrix factorization model",
    )
    parser.add_argument(
        "--random-state",
        type=int,
        default=DEFAULT_RANDOM_STATE,
        help=f"Random seed for reproducibility (default: {DEFAULT_RANDOM_STATE})",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args()


def main() -> int:
    """Main entry point for the training script.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    try:
        args = parse_arguments()
        setup_logging(verbose=args.verbose)
        logger = logging.getLogger(__name__)

        data_source = InMemoryDataSource.from_csv(args.data_dir)
        service = RecommendationService(data_source, settings)

        config = TrainingConfig.from_settings(
            settings,
            matrix_factorization=MatrixFactorizationConfig(
                rank=args.rank,
                iterations=args.iterations,
                iteration_mode=args.iteration_mode,
                random_state=args.random_state,
            ),
            neural=NeuralConfig(epochs=args.epochs, random_state=args.random_state),
            train_neural=not args.skip_neural,
        )

        logger.info("=" * 70)
        logger.info("Training Configuration")
        logger.info("=" * 70)
        logger.info(f"Data directory:   {args.data_dir}")
        logger.info(f"Output directory: {args.output_dir}")
        logger.info(f"Rank:             {args.rank}")
        logger.info(f"Iterations:       {args.iterations} ({args.iteration_mode})")
        logger.info(f"Neural epochs:    {'skipped' if args.skip_neural else args.epochs}")
        logger.info("=" * 70)

        handle = service.train_models(config, background=False)
        if handle.state != STATE_COMPLETED:
            logger.error(f"Training ended in state {handle.state}: {handle.error}")
            return 1
        if not service.snapshot.trained:
            logger.warning("No interactions found, nothing was trained")
            return 1

        service.save(args.output_dir)

        status = service.get_model_status()
        logger.info("=" * 70)
        logger.info("Training Summary")
        logger.info("=" * 70)
        logger.info(f"Number of users:       {status['user_count']}")
        logger.info(f"Number of restaurants: {status['item_count']}")
        for model_name, model_metrics in status["last_metrics"].items():
            logger.info(f"{model_name}: {model_metrics}")
        logger.info(f"Models saved to: {Path(args.output_dir).absolute()}")
        logger.info("=" * 70)

        logger.info("Training completed successfully!")
        return 0

    except FileNotFoundError as e:
        logging.error(f"File error: {e}")
        return 1
    except DataInsufficientError as e:
        logging.error(f"{e.message} {e.details}")
        return 1
    except ValueError as e:
        logging.error(f"Validation error: {e}")
        return 1
    except KeyboardInterrupt:
        logging.warning("Training interrupted by user")
        return 130
    except Exception as e:
        logging.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
