"""Database models for the campaign execution engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.flow import Flow
from db.models.run import Run
from db.models.event import Event
from db.models.deferred_task import DeferredTask, FailedTask

__all__ = [
    "Flow",
    "Run",
    "Event",
    "DeferredTask",
    "FailedTask",
]
