#!/usr/bin/env python3
"""
Test suite for the SyncOrchestrator.

Covers the per-record decisions (create, update, reject, skip), by-pass,
the origin guard, compensation of failed creations and idempotence of
repeated runs against an in-memory directory and store.
"""

import os
import sys
import json
import shutil
import tempfile
import unittest
from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import Mock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rest_user_sync.directory.base import DirectoryPort
from rest_user_sync.fetcher import PageFetcher
from rest_user_sync.models import LocalIdentity, PageEnvelope, SyncResult
from rest_user_sync.orchestrator import SyncOrchestrator
from rest_user_sync.projector import IdentityProjector
from rest_user_sync.store import InMemoryIdentityStore, InMemorySession, YamlIdentityStore


def user(name, email=None, **fields):
    data = {'userName': name, 'email': email or f'{name}@example.com', 'enabled': True}
    data.update(fields)
    return data


class StaticDirectory(DirectoryPort):
    """Serves the given users as a single page."""

    def __init__(self, users):
        self.users = users
        self.modes = []

    def fetch_page(self, mode, page, per_page):
        self.modes.append(mode)
        return PageEnvelope(body=json.dumps(self.users), page_index='1', total_pages='1')


class NonTransactionalStore(InMemoryIdentityStore):
    """Store whose sessions write straight into the committed state."""

    @contextmanager
    def unit_of_work(self):
        yield InMemorySession(self, self._state)


def make_settings(**overrides):
    settings = {
        'id': 'fed-1',
        'name': 'directory-sync',
        'prefix': 'EXT',
        'uppercase': True,
        'role_sync': True,
        'role_client': '',
        'attr_sync': True,
        'password_sync': False,
        'password_algorithm': '',
        'password_iterations': 0,
        'uncheck_federation': False,
        'not_create_users': False,
        'reset_actions': [],
        'by_pass': None,
    }
    settings.update(overrides)
    return settings


class TestSyncOrchestrator(unittest.TestCase):
    """Test cases for SyncOrchestrator."""

    def setUp(self):
        self.store = InMemoryIdentityStore()
        self.audit = Mock()

    def _orchestrator(self, users, store=None, notifier=None, projector=None, **settings):
        settings = make_settings(**settings)
        self.directory = StaticDirectory(users)
        return SyncOrchestrator(settings, PageFetcher(self.directory), store or self.store,
                                projector=projector, notifier=notifier, audit=self.audit)

    def test_creates_user_with_prefixed_role(self):
        orchestrator = self._orchestrator([user('alice', roles=['admin'])])

        result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(added=1))
        identity = self.store.get_identity('alice')
        self.assertEqual(identity.federation_link, 'fed-1')
        self.assertEqual(identity.realm_roles, {'EXT_ADMIN'})
        self.assertTrue(identity.enabled)
        self.assertTrue(identity.email_verified)
        self.audit.log_identity_operation.assert_called_with('create', 'alice', 'fed-1', True)

    def test_second_run_is_idempotent(self):
        users = [user('alice', roles=['admin'], attributes={'dept': ['R&D']}), user('bob')]
        orchestrator = self._orchestrator(users)

        first = orchestrator.sync_full()
        snapshot = [identity.to_dict() for identity in self.store.list_identities()]
        second = orchestrator.sync_full()

        self.assertEqual(first, SyncResult(added=2))
        self.assertEqual(second, SyncResult(updated=2))
        self.assertEqual([identity.to_dict() for identity in self.store.list_identities()], snapshot)

    def test_result_is_frozen(self):
        result = self._orchestrator([user('alice')]).sync_full()
        self.assertTrue(result.frozen)

    def test_by_pass_skips_everything(self):
        fetcher = Mock()
        store = Mock()
        orchestrator = SyncOrchestrator(make_settings(by_pass='true'), fetcher, store, audit=self.audit)

        with self.assertLogs('rest_user_sync.orchestrator', level='WARNING'):
            result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult.empty())
        fetcher.fetch_all.assert_not_called()
        store.unit_of_work.assert_not_called()
        self.assertIsNone(orchestrator.last_fetch_count)

    @patch.dict(os.environ, {}, clear=True)
    def test_unresolvable_by_pass_counts_as_inactive(self):
        orchestrator = self._orchestrator([user('alice')], by_pass='${SYNC_BY_PASS}')
        result = orchestrator.sync_full()
        self.assertEqual(result.added, 1)

    def test_empty_fetch_changes_nothing(self):
        self.store.add_identity(LocalIdentity(id='1', username='alice', federation_link='fed-1', enabled=True))
        orchestrator = self._orchestrator([])

        result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult())
        self.assertEqual(orchestrator.last_fetch_count, 0)
        self.assertTrue(self.store.get_identity('alice').enabled)

    def test_missing_fields_counted_as_failed(self):
        orchestrator = self._orchestrator([
            {'userName': 'nomail', 'enabled': True},
            {'email': 'ghost@example.com'},
            user('alice'),
        ])
        result = orchestrator.sync_full()
        self.assertEqual(result, SyncResult(added=1, failed=2))
        self.assertIsNone(self.store.get_identity('nomail'))

    def test_duplicates_counted_as_failed(self):
        orchestrator = self._orchestrator([
            user('alice', 'shared@example.com'),
            user('bob', 'shared@example.com'),
            user('alice', 'alice2@example.com'),
        ])
        result = orchestrator.sync_full()
        self.assertEqual(result, SyncResult(added=1, failed=2))

    def test_email_differing_only_in_case_fails_at_commit(self):
        orchestrator = self._orchestrator([
            user('alice', 'Shared@example.com'),
            user('bob', 'shared@example.com'),
        ])
        result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(added=1, failed=1))
        self.assertEqual(self.store.get_identity('alice').email, 'shared@example.com')
        self.assertIsNone(self.store.get_identity('bob'))

    def test_not_create_users(self):
        orchestrator = self._orchestrator([user('alice')], not_create_users=True)
        result = orchestrator.sync_full()
        self.assertEqual(result, SyncResult())
        self.assertEqual(self.store.list_identities(), [])

    def test_not_create_users_still_updates_linked(self):
        self.store.add_identity(LocalIdentity(id='1', username='alice', email='alice@example.com',
                                              federation_link='fed-1'))
        orchestrator = self._orchestrator([user('alice', firstName='Alice'), user('bob')], not_create_users=True)
        result = orchestrator.sync_full()
        self.assertEqual(result, SyncResult(updated=1))
        self.assertEqual(self.store.get_identity('alice').first_name, 'Alice')

    def test_unlinked_identity_rejected(self):
        self.store.add_identity(LocalIdentity(id='1', username='alice', email='alice@example.com',
                                              federation_link='other-source', first_name='Original'))
        orchestrator = self._orchestrator([user('alice', firstName='Remote')])

        with self.assertLogs('rest_user_sync.orchestrator', level='WARNING'):
            result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(failed=1))
        self.assertEqual(self.store.get_identity('alice').first_name, 'Original')

    def test_uncheck_federation_overrides_link(self):
        self.store.add_identity(LocalIdentity(id='1', username='alice', email='old@example.com',
                                              federation_link='other-source'))
        orchestrator = self._orchestrator([user('alice', firstName='Remote')], uncheck_federation=True)

        result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(updated=1))
        identity = self.store.get_identity('alice')
        self.assertEqual(identity.first_name, 'Remote')
        self.assertEqual(identity.email, 'alice@example.com')
        self.assertEqual(identity.federation_link, 'other-source')

    def test_username_match_is_case_insensitive(self):
        self.store.add_identity(LocalIdentity(id='1', username='alice', email='alice@example.com',
                                              federation_link='fed-1'))
        result = self._orchestrator([user('ALICE', 'alice@example.com')]).sync_full()
        self.assertEqual(result, SyncResult(updated=1))

    def test_origin_mismatch_counted_as_failed(self):
        self.store.add_identity(LocalIdentity(id='1', username='alice', email='alice@corp.example.com',
                                              federation_link='fed-1', first_name='Original'))
        orchestrator = self._orchestrator([user('alice', firstName='Remote')])

        with self.assertLogs('rest_user_sync.orchestrator', level='ERROR'):
            result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(failed=1))
        identity = self.store.get_identity('alice')
        self.assertEqual(identity.first_name, 'Original')
        self.assertEqual(identity.email, 'alice@corp.example.com')

    def test_identity_in_other_storage_is_evicted_not_created(self):
        self.store.add_storage_identity(LocalIdentity(id='ext-1', username='carol'))
        self.store.cache['ext-1'] = LocalIdentity(id='ext-1', username='carol')

        result = self._orchestrator([user('carol')]).sync_full()

        self.assertEqual(result, SyncResult())
        self.assertNotIn('ext-1', self.store.cache)
        self.assertIsNone(self.store.get_identity('carol'))

    def test_failed_creation_is_compensated(self):
        store = NonTransactionalStore()
        projector = Mock(spec=IdentityProjector)
        projector.project.side_effect = RuntimeError("projection failed")
        orchestrator = self._orchestrator([user('alice'), user('bob')], store=store, projector=projector)

        result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(failed=2))
        self.assertEqual(store.list_identities(), [])

    def test_compensation_failure_is_logged(self):
        store = NonTransactionalStore()
        projector = Mock(spec=IdentityProjector)
        projector.project.side_effect = RuntimeError("projection failed")
        orchestrator = self._orchestrator([user('alice')], store=store, projector=projector)

        with patch.object(InMemorySession, 'remove_identity', side_effect=RuntimeError("store down")):
            with self.assertLogs('rest_user_sync.orchestrator', level='ERROR') as logs:
                result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(failed=1))
        self.assertTrue(any('Failed to remove partially imported user alice' in line for line in logs.output))

    def test_commit_failure_counted_as_failed(self):
        self.store.add_identity(LocalIdentity(id='1', username='zed', email='taken@example.com'))
        orchestrator = self._orchestrator([user('alice', 'taken@example.com'), user('bob')])

        result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(added=1, failed=1))
        self.assertIsNone(self.store.get_identity('alice'))
        self.assertIsNotNone(self.store.get_identity('bob'))

    def test_update_failure_is_not_compensated(self):
        self.store.add_identity(LocalIdentity(id='1', username='alice', email='alice@example.com',
                                              federation_link='fed-1'))
        projector = Mock(spec=IdentityProjector)
        projector.project.side_effect = RuntimeError("projection failed")
        orchestrator = self._orchestrator([user('alice')], projector=projector)

        result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(failed=1))
        self.assertIsNotNone(self.store.get_identity('alice'))

    def test_notifier_fires_after_creation_only(self):
        self.store.add_identity(LocalIdentity(id='1', username='bob', email='bob@example.com',
                                              federation_link='fed-1'))
        notifier = Mock()
        orchestrator = self._orchestrator([user('alice'), user('bob')], notifier=notifier,
                                          reset_actions=['UPDATE_PASSWORD'])

        orchestrator.sync_full()

        notifier.notify.assert_called_once()
        identity, actions = notifier.notify.call_args[0]
        self.assertEqual(identity.username, 'alice')
        self.assertEqual(actions, ['UPDATE_PASSWORD'])

    def test_notifier_not_called_without_actions(self):
        notifier = Mock()
        self._orchestrator([user('alice')], notifier=notifier).sync_full()
        notifier.notify.assert_not_called()

    def test_sync_since_uses_updated_mode(self):
        since = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        orchestrator = self._orchestrator([user('alice')])

        orchestrator.sync_since(since)

        mode = self.directory.modes[0]
        self.assertFalse(mode.is_full)
        self.assertEqual(mode.since, since)

    def test_run_is_audited(self):
        self._orchestrator([user('alice')]).sync_full()
        self.audit.log_run.assert_called_once_with(
            'fed-1', 'full', '1 imported users, 0 updated users, 0 removed users, 0 users failed sync'
        )


class TestSyncOrchestratorFileStore(unittest.TestCase):
    """Failed writes of the file-backed store must not leak into later commits."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='orchestrator_store_test_')
        self.path = os.path.join(self.temp_dir, 'identities.yaml')
        self.store = YamlIdentityStore(self.path)
        self.store.add_identity(LocalIdentity(id='1', username='alice', email='alice@example.com',
                                              first_name='Old', federation_link='fed-1'))

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_failed_write_leaves_identity_unchanged(self):
        directory = StaticDirectory([user('alice', firstName='New')])
        orchestrator = SyncOrchestrator(make_settings(), PageFetcher(directory), self.store, audit=Mock())

        with patch('rest_user_sync.store.os.replace', side_effect=OSError('disk full')):
            result = orchestrator.sync_full()

        self.assertEqual(result, SyncResult(failed=1))
        self.assertEqual(self.store.get_identity('alice').first_name, 'Old')
        self.assertEqual(os.listdir(self.temp_dir), ['identities.yaml'])

        # The next successful write must not carry the rejected update either
        self.store.add_client('portal-app')
        self.assertEqual(YamlIdentityStore(self.path).get_identity('alice').first_name, 'Old')



if __name__ == '__main__':
    unittest.main()
