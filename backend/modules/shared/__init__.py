"""Shared DTOs and type definitions used across services.

Only lightweight, common data models should live here. Do not place
service-specific logic or heavy dependencies (e.g., aiortc) in this package.
"""

from .dto import IceServerInfo
from . import protocol

__all__ = [
    "IceServerInfo",
    "protocol",
]
