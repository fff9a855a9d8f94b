"""Application package for the student learning platform backend.

This package exposes the model, repository, service and permission
modules used by the FastAPI application. It is intentionally lightweight;
individual modules contain the concrete implementations and documentation.
"""
