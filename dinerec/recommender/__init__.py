"""Recommendation engines for DineRec.

This module contains the interaction matrix builder, the matrix
factorization and neural embedding models, the multi-factor scorer, the
hybrid dispatcher and the background training task.
"""
