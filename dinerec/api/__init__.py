"""FastAPI application module for DineRec.

This module contains the FastAPI application, route handlers and the
logging and metrics plumbing for the recommendation service.
"""
