"""
Database models package.
"""

from app.models.subscriber import Subscriber

__all__ = ["Subscriber"]
