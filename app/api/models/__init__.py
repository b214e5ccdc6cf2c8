"""
API models package for Pydantic response models.
"""

from .messages import MessageData, SyncOutcomeResponse, SyncStateResponse

__all__ = ["MessageData", "SyncOutcomeResponse", "SyncStateResponse"]
