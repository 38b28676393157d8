#!/usr/bin/env python3
"""
Test suite for email notifications and post-provisioning action emails.
"""

import os
import sys
import shutil
import tempfile
import time
import unittest
from unittest.mock import patch

import jwt

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rest_user_sync.models import LocalIdentity, SyncResult
from rest_user_sync.notifications import (
    ActionTokenIssuer,
    InvalidActionToken,
    PostProvisionNotifier,
    extract_action,
    send_email,
    send_failure_notification,
    send_success_summary,
    test_notification_config as check_notification_config,
)


class TestSendEmail(unittest.TestCase):
    """Test cases for SMTP sending."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_username': 'sync@example.com',
            'smtp_password': 'smtp-secret',
            'smtp_tls': True,
            'email_from': 'sync@example.com',
            'email_to': ['admin@example.com'],
            'email_on_failure': True,
            'email_on_success': True,
        }

    @patch('rest_user_sync.notifications.smtplib.SMTP')
    def test_send_email_with_tls(self, mock_smtp):
        server = mock_smtp.return_value

        self.assertTrue(send_email('Subject', 'Body', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('sync@example.com', 'smtp-secret')
        from_addr, to_addrs, _ = server.sendmail.call_args[0]
        self.assertEqual(from_addr, 'sync@example.com')
        self.assertEqual(to_addrs, ['admin@example.com'])

    @patch('rest_user_sync.notifications.smtplib.SMTP_SSL')
    def test_send_email_ssl_port(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        self.assertTrue(send_email('Subject', 'Body', self.config))
        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)

    @patch('rest_user_sync.notifications.smtplib.SMTP')
    def test_recipients_override(self, mock_smtp):
        send_email('Subject', 'Body', self.config, recipients=['alice@example.com'])
        self.assertEqual(mock_smtp.return_value.sendmail.call_args[0][1], ['alice@example.com'])

    def test_disabled(self):
        self.config['enable_email'] = False
        self.assertFalse(send_email('Subject', 'Body', self.config))

    def test_missing_server(self):
        del self.config['smtp_server']
        self.assertFalse(send_email('Subject', 'Body', self.config))

    @patch('rest_user_sync.notifications.smtplib.SMTP')
    def test_smtp_failure_returns_false(self, mock_smtp):
        mock_smtp.side_effect = OSError("connection refused")
        self.assertFalse(send_email('Subject', 'Body', self.config))

    @patch('rest_user_sync.notifications.send_email')
    def test_failure_notification(self, mock_send):
        mock_send.return_value = True
        self.assertTrue(send_failure_notification('Users Failed Sync', '2 users failed sync', self.config,
                                                  {'Mode': 'full'}))
        subject, body, _ = mock_send.call_args[0]
        self.assertEqual(subject, 'REST User Sync Alert: Users Failed Sync')
        self.assertIn('Mode: full', body)

    @patch('rest_user_sync.notifications.send_email')
    def test_failure_notification_disabled(self, mock_send):
        self.config['email_on_failure'] = False
        self.assertFalse(send_failure_notification('x', 'y', self.config))
        mock_send.assert_not_called()

    @patch('rest_user_sync.notifications.send_email')
    def test_success_summary(self, mock_send):
        mock_send.return_value = True
        result = SyncResult(added=3, updated=2).freeze()
        self.assertTrue(send_success_summary(result, 75.0, 'full', self.config))
        body = mock_send.call_args[0][1]
        self.assertIn('Users added: 3', body)
        self.assertIn('Users updated: 2', body)
        self.assertIn('1m 15.0s', body)

    @patch('rest_user_sync.notifications.send_email')
    def test_notification_config_check(self, mock_send):
        mock_send.return_value = True
        self.assertTrue(check_notification_config(self.config))
        self.assertIn('smtp.example.com', mock_send.call_args[0][1])


class TestActionTokens(unittest.TestCase):
    """Test cases for ActionTokenIssuer."""

    def setUp(self):
        self.issuer = ActionTokenIssuer('token-secret-for-action-links-0123456789', lifespan=600)
        self.identity = LocalIdentity(id='user-1', username='alice', email='alice@example.com')

    def test_issue_and_verify(self):
        now = int(time.time())
        token = self.issuer.issue(self.identity, ['UPDATE_PASSWORD'], now=now)
        payload = self.issuer.verify(token)
        self.assertEqual(payload, {'sub': 'user-1', 'iat': now, 'exp': now + 600, 'rqac': ['UPDATE_PASSWORD']})

    def test_token_is_hs256_jwt(self):
        token = self.issuer.issue(self.identity, [])
        self.assertEqual(jwt.get_unverified_header(token)['alg'], 'HS256')

    def test_expired(self):
        token = self.issuer.issue(self.identity, [], now=int(time.time()) - 601)
        with self.assertRaises(InvalidActionToken):
            self.issuer.verify(token)

    def test_forged_signature(self):
        token = self.issuer.issue(self.identity, ['VERIFY_EMAIL'])
        other = ActionTokenIssuer('another-secret-for-action-links-98765432', lifespan=600)
        with self.assertRaises(InvalidActionToken):
            other.verify(token)

    def test_malformed(self):
        with self.assertRaises(InvalidActionToken):
            self.issuer.verify('not-a-token')

    def test_missing_secret_uses_random_one(self):
        with self.assertLogs('rest_user_sync.notifications', level='WARNING'):
            issuer = ActionTokenIssuer(None, lifespan=600)
        token = issuer.issue(self.identity, [])
        self.assertEqual(issuer.verify(token)['sub'], 'user-1')


class TestExtractAction(unittest.TestCase):

    def test_template_with_action(self):
        self.assertEqual(extract_action('welcome.ftl(UPDATE_PASSWORD)'), ('welcome.ftl', 'UPDATE_PASSWORD'))

    def test_bare_template(self):
        self.assertEqual(extract_action('welcome.ftl'), ('welcome.ftl', None))

    def test_empty_parentheses(self):
        self.assertEqual(extract_action('welcome.ftl()'), ('welcome.ftl', None))


class TestPostProvisionNotifier(unittest.TestCase):
    """Test cases for PostProvisionNotifier."""

    def setUp(self):
        self.templates_dir = tempfile.mkdtemp(prefix='templates_test_')
        with open(os.path.join(self.templates_dir, 'welcome.ftl'), 'w') as f:
            f.write('Hi ${firstName} ${lastName} (${username}): ${link} valid ${linkExpiration} min')

        self.settings = {'public_url': 'https://sso.example.com/auth/'}
        self.config = {
            'enable_email': True,
            'smtp_server': 'smtp.example.com',
            'templates_dir': self.templates_dir,
            'action_token_lifespan': 600,
            'action_token_secret': 'token-secret-for-action-links-0123456789',
        }
        self.notifier = PostProvisionNotifier(self.settings, self.config, 'corp')
        self.identity = LocalIdentity(id='user-1', username='alice', email='alice@example.com',
                                      first_name='Alice', last_name='Liddell')

    def tearDown(self):
        shutil.rmtree(self.templates_dir, ignore_errors=True)

    def test_link_format(self):
        link = self.notifier.build_link(self.identity, ['UPDATE_PASSWORD'])
        prefix = 'https://sso.example.com/auth/realms/corp/login-actions/action-token?key='
        self.assertTrue(link.startswith(prefix))
        payload = self.notifier.issuer.verify(link[len(prefix):])
        self.assertEqual(payload['rqac'], ['UPDATE_PASSWORD'])

    @patch('rest_user_sync.notifications.send_email')
    def test_known_action(self, mock_send):
        mock_send.return_value = True
        self.notifier.notify(self.identity, ['UPDATE_PASSWORD'])

        _, body, _ = mock_send.call_args[0]
        self.assertIn('UPDATE_PASSWORD', body)
        self.assertIn('/realms/corp/login-actions/action-token?key=', body)
        self.assertIn('10 minutes', body)
        self.assertEqual(mock_send.call_args[1]['recipients'], ['alice@example.com'])

    @patch('rest_user_sync.notifications.send_email')
    def test_custom_template(self, mock_send):
        self.notifier.notify(self.identity, ['welcome.ftl(VERIFY_EMAIL)'])

        body = mock_send.call_args[0][1]
        self.assertTrue(body.startswith('Hi Alice Liddell (alice): https://sso.example.com/auth/realms/corp/'))
        self.assertTrue(body.endswith('valid 10 min'))

    @patch('rest_user_sync.notifications.send_email')
    def test_bare_template_has_no_required_action(self, mock_send):
        self.notifier.notify(self.identity, ['welcome.ftl'])
        body = mock_send.call_args[0][1]
        token = body.split('key=')[1].split(' ')[0]
        self.assertEqual(self.notifier.issuer.verify(token)['rqac'], [])

    @patch('rest_user_sync.notifications.send_email')
    def test_missing_template_falls_back(self, mock_send):
        with self.assertLogs('rest_user_sync.notifications', level='ERROR'):
            self.notifier.notify(self.identity, ['missing.ftl(UPDATE_PASSWORD)'])
        body = mock_send.call_args[0][1]
        self.assertIn('UPDATE_PASSWORD', body)

    @patch('rest_user_sync.notifications.send_email')
    def test_identity_without_email_skipped(self, mock_send):
        self.identity.email = None
        self.notifier.notify(self.identity, ['UPDATE_PASSWORD'])
        mock_send.assert_not_called()

    @patch('rest_user_sync.notifications.send_email')
    def test_failures_do_not_propagate(self, mock_send):
        mock_send.side_effect = RuntimeError("smtp exploded")
        with self.assertLogs('rest_user_sync.notifications', level='ERROR'):
            self.notifier.notify(self.identity, ['UPDATE_PASSWORD', 'VERIFY_EMAIL'])
        self.assertEqual(mock_send.call_count, 2)

    @patch('rest_user_sync.notifications.send_email')
    def test_missing_public_url(self, mock_send):
        notifier = PostProvisionNotifier({}, self.config, 'corp')
        with self.assertLogs('rest_user_sync.notifications', level='ERROR'):
            notifier.notify(self.identity, ['UPDATE_PASSWORD'])
        mock_send.assert_not_called()


if __name__ == '__main__':
    unittest.main()
