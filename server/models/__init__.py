"""Timetable Sync Database Models."""

from server.models.user import User
from server.models.device import DeviceRegistration, DeviceToken
from server.models.presentation import Presentation

__all__ = [
    "User",
    "DeviceRegistration",
    "DeviceToken",
    "Presentation",
]
