#!/usr/bin/env python3
"""
Unit tests for diff computation.
"""

import os
import sys
import unittest
from datetime import datetime, timezone

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.diff import (
    build_group_members,
    build_target_group,
    build_target_user,
    diff_groups,
    diff_users,
    group_changed,
    user_changed,
)
from directory_sync.errors import DecodeError
from directory_sync.identity import IdentityMapper, ReplacementPair
from directory_sync.models import SourceGroupWithMembers, TargetGroup, TargetGroupWithMembers, TargetMembership, TargetUser
from directory_sync.sources.ldap import LdapGroup, LdapUser

BANNED_AT = datetime(2023, 10, 20, 12, 0, 0, tzinfo=timezone.utc)


def ldap_target_user(user: LdapUser, username=None, banned_since=None) -> TargetUser:
    return TargetUser(
        username=username or user.username,
        source_raw=user.get_raw(),
        source_type='ldap',
        banned_since=banned_since,
    )


class TestDiffUsers(unittest.TestCase):
    """Test cases for diff_users."""

    def setUp(self):
        self.mapper = IdentityMapper()
        self.alice = LdapUser(username='alice', uid='1001', first_name='Alice')
        self.bob = LdapUser(username='bob', uid='1002', first_name='Bob')

    def diff(self, source_users, target_users):
        return diff_users(source_users, target_users, self.mapper, LdapUser.from_raw, 'ldap')

    def test_create(self):
        diff = self.diff([self.alice], [])

        self.assertEqual([user.username for user in diff.create], ['alice'])
        self.assertEqual(diff.result['1001'].source_raw, self.alice.get_raw())
        self.assertEqual(diff.result['1001'].source_type, 'ldap')

    def test_unchanged(self):
        diff = self.diff([self.alice], [ldap_target_user(self.alice)])

        self.assertTrue(diff.is_empty())
        self.assertEqual(diff.result['1001'].username, 'alice')

    def test_attribute_change_is_update(self):
        changed = LdapUser(username='alice', uid='1001', first_name='Alicia')
        diff = self.diff([changed], [ldap_target_user(self.alice)])

        self.assertEqual(len(diff.update), 1)
        self.assertEqual(diff.update[0].old_username, 'alice')
        self.assertEqual(diff.update[0].user.source_raw['first_name'], 'Alicia')
        self.assertIs(diff.result['1001'], diff.update[0].user)

    def test_rename_matched_by_object_id(self):
        renamed = LdapUser(username='alice2', uid='1001', first_name='Alice')
        diff = self.diff([renamed], [ldap_target_user(self.alice)])

        self.assertEqual(diff.create, [])
        self.assertEqual(diff.remove, [])
        self.assertEqual(diff.update[0].old_username, 'alice')
        self.assertEqual(diff.update[0].user.username, 'alice2')

    def test_banned_user_back_in_source_is_unbanned(self):
        diff = self.diff([self.alice], [ldap_target_user(self.alice, banned_since=BANNED_AT)])

        self.assertEqual(len(diff.update), 1)
        self.assertIsNone(diff.update[0].user.banned_since)

    def test_absent_user_is_removal_candidate(self):
        diff = self.diff([self.alice], [ldap_target_user(self.alice), ldap_target_user(self.bob)])

        self.assertEqual([user.username for user in diff.remove], ['bob'])
        self.assertNotIn('1002', diff.result)

    def test_manually_managed_users_are_skipped(self):
        targets = [
            TargetUser('root'),
            TargetUser('azure-user', source_raw={'id': 'x'}, source_type='azure'),
        ]
        diff = self.diff([], targets)

        self.assertTrue(diff.is_empty())
        self.assertEqual(diff.result, {})

    def test_undecodable_payload(self):
        target = TargetUser('broken', source_raw={'uid': 5}, source_type='ldap')
        with self.assertRaises(DecodeError):
            self.diff([], [target])

    def test_decoder_errors_are_wrapped(self):
        def decoder(raw):
            raise KeyError('uid')

        with self.assertRaises(DecodeError):
            diff_users([], [ldap_target_user(self.alice)], self.mapper, decoder, 'ldap')


class TestChangeDetection(unittest.TestCase):

    def test_user_changed(self):
        old = TargetUser('alice', {'uid': '1'}, 'ldap')
        self.assertIsNone(user_changed(TargetUser('alice', {'uid': '1'}, 'ldap'), old))
        self.assertIsNotNone(user_changed(TargetUser('alice2', {'uid': '1'}, 'ldap'), old))
        self.assertIsNotNone(user_changed(TargetUser('alice', {'uid': '2'}, 'ldap'), old))

    def test_group_changed_compares_payload(self):
        old = TargetGroup('devs', {'groupname': 'devs'}, 'ldap')
        self.assertIsNone(group_changed(TargetGroup('devs', {'groupname': 'devs'}, 'ldap'), old))

        updated = group_changed(TargetGroup('developers', {'groupname': 'developers'}, 'ldap'), old)
        self.assertEqual(updated.old_name, 'devs')
        self.assertEqual(updated.group.name, 'developers')


class TestDiffGroups(unittest.TestCase):
    """Test cases for diff_groups."""

    def setUp(self):
        self.mapper = IdentityMapper(groupname_replacements=[ReplacementPair('|all', '')])
        self.user_map = {
            '1001': TargetUser('alice', {'uid': '1001'}, 'ldap'),
            '1002': TargetUser('bob', {'uid': '1002'}, 'ldap'),
            '1003': TargetUser('carol', {'uid': '1003'}, 'ldap'),
        }

    def diff(self, source_groups, target_groups):
        return diff_groups(source_groups, target_groups, self.user_map, self.mapper,
                           LdapGroup.from_raw, 'ldap')

    def source(self, name, members):
        return SourceGroupWithMembers(LdapGroup(groupname=name), set(members))

    def target(self, name, members):
        group = build_target_group(LdapGroup(groupname=name), self.mapper, 'ldap')
        return TargetGroupWithMembers(group, set(members))

    def test_membership_set_difference(self):
        diff = self.diff([self.source('devs|all', ['1001', '1002'])],
                         [self.target('devs|all', ['alice', 'carol'])])

        self.assertEqual(diff.groups_to_update, [])
        self.assertEqual(diff.members_to_add, [TargetMembership('bob', 'devs')])
        self.assertEqual(diff.members_to_remove, [TargetMembership('carol', 'devs')])

    def test_new_group(self):
        diff = self.diff([self.source('ops|all', ['1003', '1001', 'unknown'])], [])

        self.assertEqual([group.name for group in diff.groups_to_create], ['ops'])
        self.assertEqual(diff.members_to_add, [
            TargetMembership('alice', 'ops'),
            TargetMembership('carol', 'ops'),
        ])

    def test_removed_group(self):
        diff = self.diff([], [self.target('old|all', ['alice'])])

        self.assertEqual([group.name for group in diff.groups_to_remove], ['old'])
        self.assertEqual(diff.members_to_remove, [])

    def test_name_rule_change_without_payload_change(self):
        # Only the payload is compared for groups; a name-rule change alone keeps the stored name.
        target = TargetGroupWithMembers(
            TargetGroup('devs-old', {'groupname': 'devs|all'}, 'ldap'), {'alice'})
        diff = self.diff([self.source('devs|all', ['1001', '1002'])], [target])

        self.assertEqual(diff.groups_to_update, [])
        self.assertEqual(diff.members_to_add, [TargetMembership('bob', 'devs-old')])

    def test_payload_change_renames_group(self):
        self.mapper = IdentityMapper()
        target = TargetGroupWithMembers(
            TargetGroup('devs', {'groupname': 'devs', 'extra': 'x'}, 'ldap'), {'alice'})
        diff = self.diff([self.source('devs', ['1001', '1002'])], [target])

        self.assertEqual(len(diff.groups_to_update), 1)
        self.assertEqual(diff.groups_to_update[0].old_name, 'devs')
        self.assertEqual(diff.members_to_add, [TargetMembership('bob', 'devs')])

    def test_manually_managed_groups_are_skipped(self):
        diff = self.diff([], [TargetGroupWithMembers(TargetGroup('admins'), {'root'})])
        self.assertTrue(diff.is_empty())

    def test_build_group_members_drops_unknown(self):
        group = self.source('devs', ['1001', 'missing'])
        self.assertEqual(build_group_members(group, self.user_map), {'alice'})

    def test_build_target_user_is_never_banned(self):
        user = build_target_user(LdapUser('Alice', '1001'), IdentityMapper(), 'ldap')
        self.assertEqual(user.username, 'alice')
        self.assertIsNone(user.banned_since)


if __name__ == '__main__':
    unittest.main()
