"""Dossier API package.

FastAPI service layer around evidence pack generation and verification.
"""

from .server import create_app  # noqa: F401
