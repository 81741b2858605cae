"""User directory client: display names and avatars for message senders."""
from .directory import UserDirectory, UserProfile

__all__ = ["UserDirectory", "UserProfile"]
