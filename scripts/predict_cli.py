"""CLI script for getting restaurant recommendations.

Useful for testing and evaluation. Loads the CSV data and saved models and
prints the ranking for one user.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dinerec.config import settings
from dinerec.recommender.data import InMemoryDataSource
from dinerec.recommender.hybrid import ALGORITHMS
from dinerec.recommender.service import RecommendationService
from dinerec.recommender.utils import check_model_exists

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s"
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Get restaurant recommendations for a user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/predict_cli.py data u42
  python scripts/predict_cli.py data u42 --count 5
  python scripts/predict_cli.py data u42 --algorithm matrix
  python scripts/predict_cli.py data u42 --explain
        """
    )

    parser.add_argument("data_dir", type=str, help="Directory with the CSV data")
    parser.add_argument("user_id", type=str, help="User ID to get recommendations for")
    parser.add_argument(
        "--count",
        type=int,
        default=settings.default_count,
        help=f"Number of recommendations to return (default: {settings.default_count})"
    )
    parser.add_argument(
        "--algorithm",
        type=str,
        choices=ALGORITHMS,
        default="hybrid",
        help="Strategy to use (default: hybrid)"
    )
    parser.add_argument(
        "--model-dir",
        type=str,
        default=settings.model_dir,
        help=f"Directory containing model files (default: {settings.model_dir})"
    )
    parser.add_argument(
        "--explain",
        action="store_true",
        help="Show sub-scores for every recommendation"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    try:
        service = RecommendationService(InMemoryDataSource.from_csv(args.data_dir), settings)
        if check_model_exists(args.model_dir):
            service.load(args.model_dir)
        else:
            logger.warning(f"No models in {args.model_dir}, using untrained strategies")
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    result = service.recommend(args.user_id, args.count, args.algorithm)

    print(f"\nRecommendations for user {args.user_id} (strategy: {result.strategy}"
          f"{', fallback' if result.fallback else ''}):")
    for position, rec in enumerate(result.recommendations, start=1):
        print(
            f"  {position}. {rec.name} [{', '.join(rec.cuisine)}] "
            f"{rec.match_percentage}% match, rating {rec.rating}"
        )
        print(f"     {'; '.join(rec.explanations)}")
        if args.explain and rec.sub_scores:
            scores = ", ".join(f"{k}={v:.3f}" for k, v in rec.sub_scores.items())
            print(f"     {scores}")

    print()


if __name__ == "__main__":
    main()
