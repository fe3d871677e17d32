"""
WebPilot-AI Server Package.

This package contains the web server of the WebPilot-AI run engine.
It includes the API definition, configuration, the database bootstrap and the
service layer that owns the queue worker.

Subpackages:
    api: FastAPI route definitions and endpoint logic.
    core: Configuration and database connections.
    schemas: Pydantic schemas for API request/response validation.
    services: The orchestrator service and its FastAPI dependency.
"""
