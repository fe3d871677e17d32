"""
Exception handlers for the WebPilot-AI server.

This package maps agent core errors to HTTP responses and logs every
unhandled exception with its request context.
"""

from .global_handler import setup_exception_handlers

__all__ = ["setup_exception_handlers"]
