#!/usr/bin/env python3
"""
Unit tests for the ban-before-remove lifecycle.
"""

import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.lifecycle import BanState, LifecycleAction, ban_state_of, next_state
from directory_sync.models import TargetUser

NOW = datetime(2023, 10, 20, 12, 0, 0, tzinfo=timezone.utc)
GRACE = timedelta(hours=24)


class TestNextState(unittest.TestCase):
    """Test cases for the lifecycle transition function."""

    def test_transitions(self):
        cases = [
            (BanState.ACTIVE, True, None, GRACE, (BanState.ACTIVE, LifecycleAction.NONE)),
            (BanState.BANNED, True, NOW - timedelta(hours=1), GRACE, (BanState.ACTIVE, LifecycleAction.NONE)),
            (BanState.ACTIVE, False, None, GRACE, (BanState.BANNED, LifecycleAction.BAN)),
            (BanState.BANNED, False, NOW - timedelta(hours=1), GRACE, (BanState.BANNED, LifecycleAction.NONE)),
            (BanState.BANNED, False, NOW - GRACE, GRACE, (BanState.BANNED, LifecycleAction.NONE)),
            (BanState.BANNED, False, NOW - GRACE - timedelta(seconds=1), GRACE,
             (BanState.REMOVED, LifecycleAction.REMOVE)),
            (BanState.ACTIVE, False, None, timedelta(0), (BanState.REMOVED, LifecycleAction.REMOVE)),
            (BanState.BANNED, False, NOW, timedelta(0), (BanState.REMOVED, LifecycleAction.REMOVE)),
            (BanState.REMOVED, False, None, GRACE, (BanState.REMOVED, LifecycleAction.NONE)),
        ]
        for state, present, banned_since, grace, expected in cases:
            with self.subTest(state=state, present=present, banned_since=banned_since, grace=grace):
                self.assertEqual(next_state(state, present, banned_since, NOW, grace), expected)

    def test_banned_without_timestamp_is_removed(self):
        self.assertEqual(next_state(BanState.BANNED, False, None, NOW, GRACE),
                         (BanState.REMOVED, LifecycleAction.REMOVE))


class TestBanStateOf(unittest.TestCase):

    def test_ban_state_of(self):
        self.assertEqual(ban_state_of(TargetUser('alice')), BanState.ACTIVE)
        self.assertEqual(ban_state_of(TargetUser('alice', banned_since=NOW)), BanState.BANNED)


if __name__ == '__main__':
    unittest.main()
