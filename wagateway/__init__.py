"""WhatsApp session gateway with an Evolution-API compatible HTTP surface."""

from .api import create_app
from .manager import SessionManager

__all__ = ["create_app", "SessionManager"]
