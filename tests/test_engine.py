#!/usr/bin/env python3
"""
Scenario tests for the reconciliation engine.

The engine runs against the in-memory source and store from tests/fakes.py
so every test can assert on the exact registry calls a pass makes.
"""

import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.clock import FakeClock
from directory_sync.diff import build_target_group, build_target_user
from directory_sync.engine import (
    ReconciliationEngine,
    STATUS_FAILED,
    STATUS_OK,
    STATUS_SKIPPED,
    pass_error_count,
    pass_failed,
)
from directory_sync.errors import DecodeError, FetchError, ManualManagementViolation, RemoveLimitExceeded
from directory_sync.identity import IdentityMapper, ReplacementPair
from directory_sync.models import TargetGroup, TargetUser

from tests.fakes import FakeSource, MemoryTargetStore, azure_group, azure_user

T0 = datetime(2023, 10, 20, 12, 0, 0, tzinfo=timezone.utc)

USERNAME_REPLACEMENTS = [ReplacementPair('@acme.com', ''), ReplacementPair('@', ':')]
GROUPNAME_REPLACEMENTS = [ReplacementPair('|all', '')]


class EngineTestCase(unittest.TestCase):
    """Common fixtures: alice, bob and carol plus an engine over fakes."""

    ban_duration = timedelta(0)
    remove_limit = 0

    def setUp(self):
        self.clock = FakeClock(T0)
        self.mapper = IdentityMapper(USERNAME_REPLACEMENTS, GROUPNAME_REPLACEMENTS)
        self.source = FakeSource()
        self.store = MemoryTargetStore(clock=self.clock)
        self.engine = ReconciliationEngine(
            source=self.source,
            store=self.store,
            mapper=self.mapper,
            clock=self.clock,
            remove_limit=self.remove_limit,
            ban_duration=self.ban_duration,
        )

        self.alice = azure_user('alice@acme.com')
        self.bob = azure_user('bob@acme.com')
        self.carol = azure_user('carol@acme.com')

    def target_user(self, source_user, **overrides) -> TargetUser:
        user = build_target_user(source_user, self.mapper, 'azure')
        for key, value in overrides.items():
            setattr(user, key, value)
        return user

    def target_group(self, source_group) -> TargetGroup:
        return build_target_group(source_group.source_group, self.mapper, 'azure')

    def run_pass(self):
        self.store.calls.clear()
        return self.engine.sync_once()


class TestBanLifecycle(EngineTestCase):
    ban_duration = timedelta(hours=24)

    def test_ban_then_unban_on_reappearance(self):
        self.store.put_user(self.target_user(self.alice))
        self.store.put_user(self.target_user(self.carol))
        self.source.users = [self.alice, self.bob]

        stats = self.run_pass()

        self.assertEqual(stats['users']['status'], STATUS_OK)
        self.assertEqual(stats['users']['created'], 1)
        self.assertEqual(stats['users']['banned'], 1)
        self.assertEqual(stats['users']['updated'], 0)
        self.assertIn('bob', self.store.users)
        self.assertEqual(self.store.users['carol'].banned_since, T0)
        self.assertIsNone(self.store.users['alice'].banned_since)
        self.assertNotIn(('update_user', 'alice', 'alice'), self.store.calls)

        # Pass 2 at T0+48h: carol is back, bob is gone
        self.clock.step(timedelta(hours=48))
        self.source.users = [self.alice, self.carol]

        stats = self.run_pass()

        self.assertIn(('update_user', 'carol', 'carol'), self.store.calls)
        self.assertIsNone(self.store.users['carol'].banned_since)
        self.assertIn(('ban_user', 'bob'), self.store.calls)
        self.assertEqual(self.store.users['bob'].banned_since, T0 + timedelta(hours=48))
        self.assertEqual(stats['users']['updated'], 1)
        self.assertEqual(stats['users']['banned'], 1)

    def test_banned_user_kept_during_grace_then_removed(self):
        self.store.put_user(self.target_user(self.carol))

        self.run_pass()
        self.assertEqual(self.store.calls, [('ban_user', 'carol')])

        self.clock.step(timedelta(hours=24))
        stats = self.run_pass()
        self.assertEqual(self.store.calls, [])
        self.assertEqual(stats['users']['banned'], 0)
        self.assertEqual(stats['users']['removed'], 0)

        self.clock.step(timedelta(seconds=1))
        stats = self.run_pass()
        self.assertEqual(self.store.calls, [('remove_user', 'carol')])
        self.assertEqual(stats['users']['removed'], 1)
        self.assertNotIn('carol', self.store.users)

    def test_banned_user_leaves_group_memberships(self):
        devs = azure_group('acme.devs|all', 'devs-id', members={self.alice.get_id()})
        self.source.users = [self.alice]
        self.source.groups = [devs]
        self.store.put_user(self.target_user(self.alice))
        self.store.put_user(self.target_user(self.carol))
        self.store.put_group(self.target_group(devs), members={'alice', 'carol'})

        stats = self.run_pass()

        self.assertEqual(stats['users']['banned'], 1)
        self.assertIn(('remove_member', 'acme.devs', 'carol'), self.store.calls)
        self.assertEqual(self.store.members['acme.devs'], {'alice'})

    def test_reappeared_user_gets_memberships_back(self):
        devs = azure_group('acme.devs|all', 'devs-id', members={self.alice.get_id(), self.carol.get_id()})
        self.source.groups = [devs]
        self.source.users = [self.alice]
        self.store.put_user(self.target_user(self.alice))
        self.store.put_user(self.target_user(self.carol))
        self.store.put_group(self.target_group(devs), members={'alice', 'carol'})

        self.run_pass()
        self.assertEqual(self.store.members['acme.devs'], {'alice'})

        self.clock.step(timedelta(hours=1))
        self.source.users = [self.alice, self.carol]
        self.run_pass()

        self.assertIn(('add_member', 'acme.devs', 'carol'), self.store.calls)
        self.assertEqual(self.store.members['acme.devs'], {'alice', 'carol'})


class TestImmediateRemoval(EngineTestCase):

    def test_zero_grace_removes_without_ban(self):
        self.store.put_user(self.target_user(self.carol))

        stats = self.run_pass()

        self.assertEqual(self.store.calls, [('remove_user', 'carol')])
        self.assertEqual(stats['users']['removed'], 1)
        self.assertEqual(stats['users']['banned'], 0)

    def test_zero_grace_removes_already_banned_user(self):
        self.store.put_user(self.target_user(self.carol, banned_since=T0 - timedelta(minutes=5)))

        self.run_pass()

        self.assertEqual(self.store.calls, [('remove_user', 'carol')])


class TestMembershipDiff(EngineTestCase):

    def test_exact_set_difference(self):
        devs = azure_group('acme.devs|all', 'devs-id', members={self.alice.get_id(), self.bob.get_id()})
        self.source.users = [self.alice, self.bob, self.carol]
        self.source.groups = [devs]
        for user in (self.alice, self.bob, self.carol):
            self.store.put_user(self.target_user(user))
        self.store.put_group(self.target_group(devs), members={'alice', 'carol'})

        stats = self.run_pass()

        self.assertEqual(self.store.calls, [
            ('remove_member', 'acme.devs', 'carol'),
            ('add_member', 'acme.devs', 'bob'),
        ])
        self.assertEqual(self.store.members['acme.devs'], {'alice', 'bob'})
        self.assertEqual(stats['memberships']['added'], 1)
        self.assertEqual(stats['memberships']['removed'], 1)

    def test_new_group_gets_resolvable_members_only(self):
        devs = azure_group('acme.devs|all', 'devs-id',
                           members={self.alice.get_id(), 'disabled-account-id'})
        self.source.users = [self.alice]
        self.source.groups = [devs]

        self.run_pass()

        self.assertEqual(self.store.calls, [
            ('create_user', 'alice'),
            ('create_group', 'acme.devs'),
            ('add_member', 'acme.devs', 'alice'),
        ])
        self.assertEqual(self.store.members['acme.devs'], {'alice'})

    def test_group_absent_from_source_is_removed(self):
        gone = azure_group('acme.old|all', 'old-id')
        self.store.put_group(self.target_group(gone), members=set())

        stats = self.run_pass()

        self.assertEqual(self.store.calls, [('remove_group', 'acme.old')])
        self.assertEqual(stats['groups']['removed'], 1)

    def test_apply_order(self):
        self.source.users = [self.alice, self.bob]
        self.store.put_user(self.target_user(self.carol))
        self.store.put_user(self.target_user(self.alice, source_raw={'id': 'alice-id', 'principal_name': 'old'}))
        old = azure_group('acme.old|all', 'old-id')
        renamed_before = azure_group('acme.qa|all', 'qa-id', members={self.alice.get_id()})
        renamed_after = azure_group('acme.quality|all', 'qa-id', members={self.bob.get_id()})
        created = azure_group('acme.ops|all', 'ops-id', members={self.bob.get_id()})
        self.store.put_group(self.target_group(old))
        self.store.put_group(self.target_group(renamed_before), members={'alice'})
        self.source.groups = [renamed_after, created]

        self.run_pass()

        operations = [call[0] for call in self.store.calls]
        self.assertEqual(operations, [
            'remove_user',
            'create_user',
            'update_user',
            'remove_group',
            'create_group',
            'update_group',
            'remove_member',
            'add_member',
            'add_member',
        ])
        self.assertIn(('remove_member', 'acme.quality', 'alice'), self.store.calls)
        self.assertIn(('add_member', 'acme.quality', 'bob'), self.store.calls)


class TestRemoveLimit(EngineTestCase):
    remove_limit = 3

    def test_user_phase_aborts_without_mutations(self):
        for user in (self.alice, self.bob, self.carol):
            self.store.put_user(self.target_user(user))

        stats = self.run_pass()

        self.assertEqual(stats['users']['status'], STATUS_FAILED)
        self.assertIsInstance(stats['users']['exception'], RemoveLimitExceeded)
        self.assertEqual(stats['groups']['status'], STATUS_SKIPPED)
        self.assertEqual(self.store.calls, [])
        self.assertEqual(set(self.store.users), {'alice', 'bob', 'carol'})
        self.assertTrue(pass_failed(stats))

    def test_below_limit_proceeds(self):
        for user in (self.alice, self.bob):
            self.store.put_user(self.target_user(user))

        stats = self.run_pass()

        self.assertEqual(stats['users']['status'], STATUS_OK)
        self.assertEqual(stats['users']['removed'], 2)

    def test_group_phase_aborts_without_mutations(self):
        self.source.users = [self.alice]
        self.store.put_user(self.target_user(self.alice))
        for name in ('a', 'b', 'c'):
            self.store.put_group(self.target_group(azure_group(name)))

        stats = self.run_pass()

        self.assertEqual(stats['users']['status'], STATUS_OK)
        self.assertEqual(stats['groups']['status'], STATUS_FAILED)
        self.assertIsInstance(stats['groups']['exception'], RemoveLimitExceeded)
        self.assertEqual(self.store.calls, [])
        self.assertEqual(set(self.store.groups), {'a', 'b', 'c'})

    def test_limit_is_checked_by_engine_helper(self):
        self.assertFalse(self.engine.is_remove_limit_reached(2))
        self.assertTrue(self.engine.is_remove_limit_reached(3))
        self.engine.remove_limit = 0
        self.assertFalse(self.engine.is_remove_limit_reached(1000))


class TestIdempotenceAndRenames(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.devs = azure_group('acme.devs|all', 'devs-id', members={self.alice.get_id(), self.bob.get_id()})
        self.source.users = [self.alice, self.bob]
        self.source.groups = [self.devs]

    def test_second_pass_is_noop(self):
        stats = self.run_pass()
        self.assertEqual(stats['users']['created'], 2)
        self.assertEqual(stats['groups']['created'], 1)
        self.assertEqual(stats['memberships']['added'], 2)

        stats = self.run_pass()

        self.assertEqual(self.store.calls, [])
        self.assertEqual(pass_error_count(stats), 0)

    def test_every_source_user_has_one_target_user(self):
        self.run_pass()

        self.assertEqual(set(self.store.users), {'alice', 'bob'})
        for source_user in (self.alice, self.bob):
            user = self.store.users[self.mapper.build_username(source_user)]
            self.assertEqual(user.source_raw, source_user.get_raw())
            self.assertEqual(user.source_type, 'azure')

    def test_user_rename_addresses_old_name(self):
        self.run_pass()

        renamed = azure_user('alice.smith@acme.com', azure_id=self.alice.get_id())
        self.source.users = [renamed, self.bob]
        self.run_pass()

        self.assertEqual(self.store.calls, [('update_user', 'alice', 'alice.smith')])
        self.assertIn('alice.smith', self.store.users)
        self.assertNotIn('alice', self.store.users)
        self.assertEqual(self.store.members['acme.devs'], {'alice.smith', 'bob'})

        self.run_pass()
        self.assertEqual(self.store.calls, [])

    def test_replacement_rule_change_renames_users(self):
        self.run_pass()

        self.engine.mapper = IdentityMapper([ReplacementPair('@', ':')], GROUPNAME_REPLACEMENTS)
        self.run_pass()

        self.assertIn(('update_user', 'alice', 'alice:acme.com'), self.store.calls)
        self.assertIn(('update_user', 'bob', 'bob:acme.com'), self.store.calls)
        self.assertEqual(self.store.members['acme.devs'], {'alice:acme.com', 'bob:acme.com'})

    def test_group_rename_addresses_old_name(self):
        self.run_pass()

        renamed = azure_group('acme.developers|all', 'devs-id', members={self.alice.get_id()})
        self.source.groups = [renamed]
        stats = self.run_pass()

        self.assertEqual(self.store.calls, [
            ('update_group', 'acme.devs', 'acme.developers'),
            ('remove_member', 'acme.developers', 'bob'),
        ])
        self.assertEqual(stats['groups']['updated'], 1)
        self.assertNotIn('acme.devs', self.store.groups)
        self.assertEqual(self.store.members['acme.developers'], {'alice'})


class TestFailures(EngineTestCase):

    def test_per_entity_failure_does_not_stop_siblings(self):
        self.source.users = [self.alice, self.bob, self.carol]
        self.store.fail_on.add(('create_user', 'bob'))

        stats = self.run_pass()

        self.assertEqual(stats['users']['status'], STATUS_OK)
        self.assertEqual(stats['users']['created'], 2)
        self.assertEqual(stats['users']['create_errors'], 1)
        self.assertEqual(set(self.store.users), {'alice', 'carol'})
        self.assertFalse(pass_failed(stats))
        self.assertEqual(pass_error_count(stats), 1)

        # A failed create reappears on the next pass
        self.store.fail_on.clear()
        self.run_pass()
        self.assertEqual(self.store.calls, [('create_user', 'bob')])

    def test_failed_membership_counted(self):
        devs = azure_group('acme.devs|all', 'devs-id', members={self.alice.get_id(), self.bob.get_id()})
        self.source.users = [self.alice, self.bob]
        self.source.groups = [devs]
        self.store.fail_on.add(('add_member', 'acme.devs'))

        stats = self.run_pass()

        self.assertEqual(stats['memberships']['add_errors'], 2)
        self.assertEqual(stats['memberships']['added'], 0)
        self.assertEqual(stats['groups']['created'], 1)

    def test_source_fetch_failure_skips_everything(self):
        self.source.fail_users = True
        self.source.users = [self.alice]

        stats = self.run_pass()

        self.assertEqual(stats['users']['status'], STATUS_FAILED)
        self.assertIn('directory unavailable', stats['users']['error'])
        self.assertEqual(stats['groups']['status'], STATUS_SKIPPED)
        self.assertEqual(self.store.calls, [])

    def test_group_fetch_failure_keeps_user_changes(self):
        self.source.users = [self.alice]
        self.source.fail_groups = True

        stats = self.run_pass()

        self.assertEqual(stats['users']['status'], STATUS_OK)
        self.assertEqual(stats['groups']['status'], STATUS_FAILED)
        self.assertEqual(self.store.calls, [('create_user', 'alice')])

    def test_undecodable_payload_fails_user_phase(self):
        self.source.users = [self.bob]
        self.store.put_user(TargetUser('broken', source_raw={'id': 42}, source_type='azure'))

        stats = self.run_pass()

        self.assertEqual(stats['users']['status'], STATUS_FAILED)
        self.assertIsInstance(stats['users']['exception'], DecodeError)
        self.assertEqual(self.store.calls, [])

    def test_sync_users_raises_phase_errors(self):
        self.store.fail_listing = True
        with self.assertRaises(FetchError) as context:
            self.engine.sync_users()
        self.assertIn('registry unavailable', str(context.exception))


class TestManuallyManaged(EngineTestCase):

    def test_unmanaged_entities_are_left_alone(self):
        self.source.users = [self.alice]
        self.store.put_user(TargetUser('root'))
        self.store.put_user(TargetUser('ldap-user', source_raw={'uid': '1'}, source_type='ldap'))
        self.store.put_group(TargetGroup('admins'), members={'root'})
        self.store.put_group(TargetGroup('ldap-group', source_raw={'groupname': 'x'}, source_type='ldap'))

        stats = self.run_pass()

        self.assertEqual(self.store.calls, [('create_user', 'alice')])
        self.assertEqual(stats['users']['removed'], 0)
        self.assertEqual(stats['groups']['removed'], 0)
        self.assertIn('root', self.store.users)
        self.assertEqual(self.store.members['admins'], {'root'})

    def test_store_refuses_unmanaged_mutation(self):
        self.store.put_user(TargetUser('root'))

        with self.assertRaises(ManualManagementViolation):
            self.engine.ban_or_remove_user(TargetUser('root'))
        self.assertEqual(self.store.calls, [])


class TestBanOrRemove(EngineTestCase):
    ban_duration = timedelta(hours=1)

    def test_outcomes(self):
        active = self.target_user(self.alice)
        self.store.put_user(active)
        self.assertEqual(self.engine.ban_or_remove_user(active), (True, False))

        banned = self.target_user(self.bob, banned_since=T0 - timedelta(minutes=30))
        self.store.put_user(banned)
        self.assertEqual(self.engine.ban_or_remove_user(banned), (False, False))

        expired = self.target_user(self.carol, banned_since=T0 - timedelta(hours=2))
        self.store.put_user(expired)
        self.assertEqual(self.engine.ban_or_remove_user(expired), (False, True))
        self.assertNotIn('carol', self.store.users)


if __name__ == '__main__':
    unittest.main()
