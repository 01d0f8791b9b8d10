#!/usr/bin/env python3
"""
Unit tests for directory name mapping.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.identity import IdentityMapper, ReplacementPair, apply_replacements
from directory_sync.sources.azure import AzureGroup, AzureUser
from directory_sync.sources.ldap import LdapGroup, LdapUser


class TestApplyReplacements(unittest.TestCase):
    """Test cases for apply_replacements."""

    def setUp(self):
        self.rules = [ReplacementPair('@acme.com', ''), ReplacementPair('@', ':')]

    def test_company_domain_is_stripped(self):
        """Test that the first matching rule wins for the company domain."""
        self.assertEqual(apply_replacements('Alice@acme.com', self.rules), 'alice')

    def test_foreign_domain_keeps_separator(self):
        self.assertEqual(apply_replacements('Bob@Partner.org', self.rules), 'bob:partner.org')

    def test_rules_apply_in_order_over_intermediate_string(self):
        rules = [ReplacementPair('a', 'b'), ReplacementPair('b', 'c')]
        self.assertEqual(apply_replacements('ab', rules), 'cc')

        reversed_rules = [ReplacementPair('b', 'c'), ReplacementPair('a', 'b')]
        self.assertEqual(apply_replacements('ab', reversed_rules), 'bc')

    def test_every_occurrence_is_replaced(self):
        self.assertEqual(apply_replacements('a.b.c', [ReplacementPair('.', '-')]), 'a-b-c')

    def test_lowercase_happens_after_replacements(self):
        """Test that replacement matching is case sensitive."""
        rules = [ReplacementPair('@ACME.COM', '')]
        self.assertEqual(apply_replacements('alice@acme.com', rules), 'alice@acme.com')
        self.assertEqual(apply_replacements('ALICE@ACME.COM', rules), 'alice')

    def test_no_rules(self):
        self.assertEqual(apply_replacements('Alice', None), 'alice')
        self.assertEqual(apply_replacements('Alice', []), 'alice')

    def test_empty_from_is_plain_replace(self):
        """Test that an empty pattern matches between every character, as str.replace does."""
        self.assertEqual(ReplacementPair('', '-').apply('ab'), '-a-b-')


class TestReplacementPair(unittest.TestCase):

    def test_from_config(self):
        pair = ReplacementPair.from_config({'from': '@acme.com', 'to': ''})
        self.assertEqual(pair, ReplacementPair('@acme.com', ''))

    def test_from_config_missing_to(self):
        pair = ReplacementPair.from_config({'from': '|all'})
        self.assertEqual(pair.to, '')


class TestIdentityMapper(unittest.TestCase):
    """Test cases for IdentityMapper."""

    def setUp(self):
        self.mapper = IdentityMapper.from_config({
            'username_replacements': [
                {'from': '@acme.com', 'to': ''},
                {'from': '@', 'to': ':'},
            ],
            'groupname_replacements': [
                {'from': '|all', 'to': ''},
            ],
        })

    def test_azure_names(self):
        user = AzureUser(principal_name='Alice@acme.com', azure_id='1')
        group = AzureGroup(identity='acme.devs|all', azure_id='2', display_name='acme.devs|all')

        self.assertEqual(self.mapper.build_username(user), 'alice')
        self.assertEqual(self.mapper.build_group_name(group), 'acme.devs')

    def test_ldap_names(self):
        self.assertEqual(self.mapper.build_username(LdapUser(username='Carol', uid='3')), 'carol')
        self.assertEqual(self.mapper.build_group_name(LdapGroup(groupname='Admins|all')), 'admins')

    def test_empty_config(self):
        mapper = IdentityMapper.from_config({})
        user = AzureUser(principal_name='Alice@acme.com', azure_id='1')
        self.assertEqual(mapper.build_username(user), 'alice@acme.com')


if __name__ == '__main__':
    unittest.main()
