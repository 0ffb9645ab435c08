"""Small helpers shared by the tracking layers."""

from .location import caller_location

__all__ = ["caller_location"]
