"""
Ban-before-remove lifecycle of registry users.

A user whose ObjectID disappeared from the directory moves
``ACTIVE -> BANNED -> REMOVED``. With a zero grace period the ban step is
skipped. Users come back to ``ACTIVE`` only by reappearing in the directory,
which the engine handles through an ordinary update that clears the ban.
"""

import enum
from datetime import datetime, timedelta
from typing import Optional, Tuple

from directory_sync.models import TargetUser


class BanState(enum.Enum):
    ACTIVE = 'active'
    BANNED = 'banned'
    REMOVED = 'removed'


class LifecycleAction(enum.Enum):
    NONE = 'none'
    BAN = 'ban'
    REMOVE = 'remove'


def ban_state_of(user: TargetUser) -> BanState:
    return BanState.BANNED if user.is_banned() else BanState.ACTIVE


def next_state(state: BanState,
               present_in_source: bool,
               banned_since: Optional[datetime],
               now: datetime,
               grace: timedelta) -> Tuple[BanState, LifecycleAction]:
    """
    Compute the next lifecycle state of a user and the registry call it needs.

    Args:
        state: Current state of the registry user
        present_in_source: Whether the user's ObjectID is in the directory snapshot
        banned_since: Ban timestamp of a banned user
        now: Current time from the injected clock
        grace: Ban-before-remove duration; zero removes immediately

    Returns:
        Tuple of (next state, action to perform)
    """
    if state == BanState.REMOVED:
        return BanState.REMOVED, LifecycleAction.NONE

    if present_in_source:
        # Un-banning is an update with BannedSince reset, not a lifecycle action.
        return BanState.ACTIVE, LifecycleAction.NONE

    if grace <= timedelta(0):
        return BanState.REMOVED, LifecycleAction.REMOVE

    if state == BanState.ACTIVE:
        return BanState.BANNED, LifecycleAction.BAN

    if banned_since is None or now - banned_since > grace:
        return BanState.REMOVED, LifecycleAction.REMOVE

    return BanState.BANNED, LifecycleAction.NONE
