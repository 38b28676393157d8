#!/usr/bin/env python3
"""
Unit tests for record deduplication.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rest_user_sync.dedup import Deduplicator
from rest_user_sync.models import RemoteRecord, SyncResult


class TestDeduplicator(unittest.TestCase):
    """Test cases for Deduplicator.clean."""

    def setUp(self):
        self.dedup = Deduplicator()
        self.result = SyncResult()

    def test_nulls_dropped_without_counting(self):
        cleaned = self.dedup.clean([None, RemoteRecord('alice', 'alice@example.com'), None], self.result)
        self.assertEqual([r.username for r in cleaned], ['alice'])
        self.assertEqual(self.result.failed, 0)

    def test_duplicate_email_dropped(self):
        records = [
            RemoteRecord('alice', 'shared@example.com'),
            RemoteRecord('bob', 'shared@example.com'),
        ]
        with self.assertLogs('rest_user_sync.dedup', level='WARNING') as logs:
            cleaned = self.dedup.clean(records, self.result)

        self.assertEqual([r.username for r in cleaned], ['alice'])
        self.assertEqual(self.result.failed, 1)
        self.assertIn('Ignored user: name->bob email->shared@example.com', logs.output[0])

    def test_duplicate_username_dropped(self):
        records = [
            RemoteRecord('alice', 'alice@example.com'),
            RemoteRecord('alice', 'alice.other@example.com'),
        ]
        cleaned = self.dedup.clean(records, self.result)
        self.assertEqual([r.email for r in cleaned], ['alice@example.com'])
        self.assertEqual(self.result.failed, 1)

    def test_keys_compare_case_sensitively(self):
        records = [
            RemoteRecord('alice', 'Shared@example.com'),
            RemoteRecord('Alice', 'shared@example.com'),
        ]
        cleaned = self.dedup.clean(records, self.result)
        self.assertEqual(len(cleaned), 2)
        self.assertEqual(self.result.failed, 0)

    def test_email_dropped_record_does_not_claim_username(self):
        records = [
            RemoteRecord('alice', 'shared@example.com'),
            RemoteRecord('bob', 'shared@example.com'),
            RemoteRecord('bob', 'bob@example.com'),
        ]
        cleaned = self.dedup.clean(records, self.result)
        self.assertEqual([(r.username, r.email) for r in cleaned],
                         [('alice', 'shared@example.com'), ('bob', 'bob@example.com')])
        self.assertEqual(self.result.failed, 1)

    def test_output_sorted_and_unique(self):
        records = [
            RemoteRecord('carol', 'carol@example.com'),
            RemoteRecord('alice', 'alice@example.com'),
            RemoteRecord('bob', 'bob@example.com'),
            RemoteRecord('alice', 'alice2@example.com'),
            RemoteRecord('dave', 'bob@example.com'),
        ]
        cleaned = self.dedup.clean(records, self.result)

        usernames = [r.username for r in cleaned]
        emails = [r.email for r in cleaned]
        self.assertEqual(usernames, ['alice', 'bob', 'carol'])
        self.assertEqual(len(set(emails)), len(emails))
        self.assertEqual(self.result.failed, 2)

    def test_ineligible_records_pass_through(self):
        records = [
            RemoteRecord(None, 'ghost@example.com'),
            RemoteRecord('nomail', None),
            RemoteRecord('alice', 'alice@example.com'),
        ]
        cleaned = self.dedup.clean(records, self.result)
        self.assertEqual(len(cleaned), 3)
        self.assertIsNone(cleaned[0].username)
        self.assertEqual(self.result.failed, 0)


if __name__ == '__main__':
    unittest.main()
