"""
Core utilities and configuration for WebPilot-AI.

This package provides logging configuration and Logfire monitoring shared by
the agent core and the server.
"""

from webpilot_ai.core.logging_config import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
