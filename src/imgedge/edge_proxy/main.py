"""Uvicorn entrypoint for the imgedge edge proxy."""

from __future__ import annotations

from .app import create_app

app = create_app()
