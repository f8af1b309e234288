"""
Supervision Service

Composition root: configuration, polling, writes and health endpoints.
"""

from .service import SupervisionService

__all__ = ["SupervisionService"]
