"""Membership oracle client: which rooms (chapters) a user may join."""
from .oracle import MembershipOracle

__all__ = ["MembershipOracle"]
