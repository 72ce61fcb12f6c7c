"""DineRec: hybrid restaurant recommendation service.

This package ranks restaurants for a user from sparse implicit signals
(orders, ratings, repeat visits), blending matrix factorization, a neural
embedding model and a rule-based multi-factor scorer.

Modules:
    api: FastAPI application and REST API endpoints
    recommender: interaction matrix, models, scoring and training
"""

__version__ = "0.1.0"
