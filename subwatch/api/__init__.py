"""SubWatch HTTP API."""

from __future__ import annotations


def main() -> None:
    """Console entry point: serve subwatch.api.app with uvicorn."""
    import uvicorn

    from subwatch.infrastructure.settings import API_HOST, API_PORT, DEBUG

    uvicorn.run("subwatch.api.app:app", host=API_HOST, port=API_PORT, reload=DEBUG)
