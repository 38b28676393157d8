"""
Email notification utilities for REST User Sync.

This module sends operator notifications (sync failures, run summaries) and
the post-provisioning emails asking newly created users to perform required
actions through a signed action link.
"""

import os
import re
import time
import secrets
import smtplib
import logging
from string import Template
from contextlib import contextmanager
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional, Tuple
from datetime import datetime

import jwt

from rest_user_sync.models import LocalIdentity, SyncResult

logger = logging.getLogger(__name__)

# Actions sent with the standard "execute actions" email
KNOWN_ACTIONS = ('UPDATE_PASSWORD', 'VERIFY_EMAIL')

CUSTOM_ACTION_PATTERN = re.compile(r'\((.*?)\)')

DEFAULT_ACTION_TOKEN_LIFESPAN = 43200


class NotificationError(Exception):
    """Exception raised when notification sending fails."""
    pass


class InvalidActionToken(NotificationError):
    """Raised when an action token is malformed, forged or expired."""
    pass


def _recipients(config: Dict[str, Any], override: Optional[List[str]] = None) -> List[str]:
    email_to = override if override is not None else config.get('email_to', [])
    if isinstance(email_to, str):
        return [email_to]
    return list(email_to or [])


@contextmanager
def smtp_connection(config: Dict[str, Any]):
    """
    Open an authenticated SMTP connection for the notification settings.

    Port 465 uses implicit TLS, any other port upgrades with STARTTLS unless
    ``smtp_tls`` is false. The connection is closed when the block exits.
    """
    host = config.get('smtp_server')
    port = config.get('smtp_port', 587)

    if port == 465:
        server = smtplib.SMTP_SSL(host, port)
    else:
        server = smtplib.SMTP(host, port)
        if config.get('smtp_tls', True):
            server.starttls()
    try:
        username = config.get('smtp_username')
        password = config.get('smtp_password')
        if username and password:
            server.login(username, password)
        yield server
    finally:
        try:
            server.quit()
        except smtplib.SMTPException as e:
            logger.debug(f"SMTP quit failed: {e}")


def send_email(subject: str, body: str, config: Dict[str, Any],
               recipients: Optional[List[str]] = None) -> bool:
    """
    Send a plain text email through the configured SMTP relay.

    Args:
        subject: Email subject line
        body: Email body content
        config: ``notifications`` configuration section
        recipients: Addresses to use instead of the configured ``email_to`` list

    Returns:
        True if the relay accepted the message, False otherwise
    """
    if not config.get('enable_email', True):
        logger.debug("Email notifications disabled")
        return False
    if not config.get('smtp_server'):
        logger.error("SMTP server not configured")
        return False

    email_to = _recipients(config, recipients)
    if not email_to:
        logger.error("No email recipients configured")
        return False

    email_from = config.get('email_from', config.get('smtp_username'))
    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        with smtp_connection(config) as server:
            server.sendmail(email_from, email_to, msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email '{subject}' via {config.get('smtp_server')}: {e}")
        return False

    logger.info(f"Email sent to {len(email_to)} recipient(s): {subject}")
    return True


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        return f"{int(runtime_seconds // 60)}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def _report_body(heading: str, sections: List[Tuple[str, Dict[str, Any]]], footer: str = "") -> str:
    lines = [heading, f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", ""]
    for title, fields in sections:
        if not fields:
            continue
        if title:
            lines.append(f"{title}:")
        lines.extend(f"  {key}: {value}" for key, value in fields.items())
        lines.append("")
    if footer:
        lines.extend([footer, ""])
    lines.append("This is an automated message from REST User Sync.")
    return '\n'.join(lines)


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Alert operators that a sync run failed or rejected users.

    Args:
        title: Short failure label, used in the subject
        error_message: What went wrong
        config: ``notifications`` configuration section
        additional_info: Extra key/value context for the body

    Returns:
        True if the alert was sent
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    body = _report_body(
        "REST User Sync Failure Report",
        [('', {'Failure Type': title, 'Error Message': error_message}),
         ('Additional Information', additional_info or {})],
        footer="Details of every rejected user are in the sync and audit logs."
    )
    return send_email(f"REST User Sync Alert: {title}", body, config)


def send_success_summary(result: SyncResult, runtime_seconds: float, mode: str,
                         config: Dict[str, Any]) -> bool:
    """Mail the tally of a clean run when ``email_on_success`` is set."""
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body = _report_body(
        "REST User Sync Summary Report",
        [('Statistics', {
            'Mode': mode,
            'Total runtime': format_runtime(runtime_seconds),
            'Users added': result.added,
            'Users updated': result.updated,
            'Users removed': result.removed,
            'Users failed': result.failed,
        })]
    )
    return send_email("REST User Sync: Successful Completion", body, config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Send a test email with the current SMTP settings.

    Returns:
        True if the test email was sent
    """
    body = _report_body(
        "This is a test email from REST User Sync.",
        [('Settings', {
            'SMTP Server': config.get('smtp_server', 'not configured'),
            'SMTP Port': config.get('smtp_port', 587),
            'From Address': config.get('email_from', 'not configured'),
            'Recipients': ', '.join(_recipients(config)) or 'none',
        })],
        footer="Receiving it means notification emails and action emails can be delivered."
    )
    sent = send_email("REST User Sync: Configuration Test", body, config)
    if sent:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return sent


def extract_action(action: str) -> Tuple[str, Optional[str]]:
    """
    Split a custom action into template name and required action.

    ``welcome.ftl(UPDATE_PASSWORD)`` gives ``('welcome.ftl', 'UPDATE_PASSWORD')``;
    a bare ``welcome.ftl`` carries no required action.
    """
    match = CUSTOM_ACTION_PATTERN.search(action)
    if not match:
        return action.strip(), None
    template = action[:match.start()].strip()
    required = match.group(1).strip()
    return template, required or None


class ActionTokenIssuer:
    """Issues and verifies the HS256 JWTs carried by action links."""

    ALGORITHM = 'HS256'

    def __init__(self, secret: Optional[str] = None, lifespan: int = DEFAULT_ACTION_TOKEN_LIFESPAN):
        if secret:
            self.secret = secret
        else:
            logger.warning("No action_token_secret configured, action links will not survive a restart")
            self.secret = secrets.token_hex(32)
        self.lifespan = int(lifespan)

    def issue(self, identity: LocalIdentity, required_actions: List[str], now: Optional[int] = None) -> str:
        """
        Issue a token for the given identity.

        Args:
            identity: Subject of the token
            required_actions: Actions the user must perform
            now: Issue time in epoch seconds

        Returns:
            Encoded JWT
        """
        issued_at = int(time.time()) if now is None else now
        payload = {
            'sub': identity.id,
            'iat': issued_at,
            'exp': issued_at + self.lifespan,
            'rqac': list(required_actions),
        }
        return jwt.encode(payload, self.secret, algorithm=self.ALGORITHM)

    def verify(self, token: str) -> Dict[str, Any]:
        """
        Check a token and return its claims.

        Raises:
            InvalidActionToken: If the token is malformed, forged or expired
        """
        try:
            return jwt.decode(token, self.secret, algorithms=[self.ALGORITHM],
                              options={'require': ['sub', 'exp']})
        except jwt.ExpiredSignatureError:
            raise InvalidActionToken("Action token expired")
        except jwt.InvalidTokenError as e:
            raise InvalidActionToken(f"Invalid action token: {e}")


class PostProvisionNotifier:
    """
    Sends the post-creation action emails to newly provisioned identities.

    Failures are logged and never propagate to the caller.
    """

    def __init__(self, settings: Dict[str, Any], notifications_config: Dict[str, Any], realm: str,
                 issuer: Optional[ActionTokenIssuer] = None):
        self.settings = settings
        self.config = notifications_config or {}
        self.realm = realm
        self.public_url = (settings.get('public_url') or '').rstrip('/')
        self.templates_dir = self.config.get('templates_dir', 'templates')
        self.lifespan = int(self.config.get('action_token_lifespan', DEFAULT_ACTION_TOKEN_LIFESPAN))
        self.issuer = issuer or ActionTokenIssuer(self.config.get('action_token_secret'), self.lifespan)

    def notify(self, identity: LocalIdentity, actions: List[str]):
        """
        Send one email per configured action.

        Args:
            identity: Newly created identity
            actions: Known required actions or ``template.ftl(ACTION)`` entries
        """
        if not identity.email:
            logger.debug(f"User {identity.username} has no email, no action email sent")
            return

        if not self.public_url:
            logger.error(f"public_url is not configured, cannot send action emails to {identity.username}")
            return

        for action in actions:
            try:
                if action in KNOWN_ACTIONS:
                    self._known_action(identity, action)
                else:
                    self._custom_action(identity, action)
            except Exception as e:
                logger.error(f"Failed to send actions email to {identity.username}: {e}")

    def build_link(self, identity: LocalIdentity, required_actions: List[str]) -> str:
        token = self.issuer.issue(identity, required_actions)
        return f"{self.public_url}/realms/{self.realm}/login-actions/action-token?key={token}"

    @property
    def link_expiration_minutes(self) -> int:
        return self.lifespan // 60

    def _known_action(self, identity: LocalIdentity, action: str):
        link = self.build_link(identity, [action])
        body = self._default_body(identity, link, [action])
        sent = send_email(self.config.get('action_email_subject', 'Update Your Account'),
                          body, self.config, recipients=[identity.email])
        logger.info(f"Action {action} email {'sent' if sent else 'not sent'} to {identity.username}")

    def _custom_action(self, identity: LocalIdentity, action: str):
        template_name, required = extract_action(action)
        required_actions = [required] if required else []
        link = self.build_link(identity, required_actions)

        template_path = os.path.join(self.templates_dir, template_name)
        try:
            with open(template_path, 'r', encoding='utf-8') as f:
                template = Template(f.read())
            body = template.safe_substitute(
                link=link,
                linkExpiration=str(self.link_expiration_minutes),
                username=identity.username,
                firstName=identity.first_name or '',
                lastName=identity.last_name or '',
            )
        except OSError as e:
            logger.error(f"Email template {template_path} could not be read: {e}")
            body = self._default_body(identity, link, required_actions)

        sent = send_email(self.config.get('action_email_subject', 'Update Your Account'),
                          body, self.config, recipients=[identity.email])
        logger.info(f"Template {template_name} email {'sent' if sent else 'not sent'} to {identity.username}")

    def _default_body(self, identity: LocalIdentity, link: str, actions: List[str]) -> str:
        lines = [
            f"Hello {identity.first_name or identity.username},",
            "",
        ]
        if actions:
            lines.append("Your administrator has just requested that you update your account by performing "
                         f"the following action(s): {', '.join(actions)}.")
        lines.extend([
            "Click on the link below to start this process.",
            "",
            link,
            "",
            f"This link will expire within {self.link_expiration_minutes} minutes.",
            "",
            "If you are unaware that your administrator has requested this, just ignore this message "
            "and nothing will be changed.",
        ])
        return '\n'.join(lines)
