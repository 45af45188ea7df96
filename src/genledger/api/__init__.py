"""
GENLEDGER - API Module

FastAPI server exposing:
- Credit balance, history and reconciliation
- Generation lifecycle and long-running video jobs
- Checkout and payment settlement
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
