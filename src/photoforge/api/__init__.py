"""Photoforge — FastAPI REST API layer.

Modules
-------
main
    FastAPI application with all route handlers, the identity dependency and
    the ``main()`` CLI entry point.
models
    Pydantic models for API request validation.
"""
