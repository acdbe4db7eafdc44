# app/__init__.py
"""
Package entrypoint for the billing ledger API.

This lets us run:
    uvicorn app:app --reload
"""

from .main import app

__all__ = ["app"]
