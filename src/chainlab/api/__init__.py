"""Chainlab - FastAPI REST API layer.

This package contains the FastAPI application and its request/response
models.

Modules
-------
main
    FastAPI application with all route handlers and the ``main()`` CLI
    entry point.
models
    Pydantic models for API request and response validation.
"""
