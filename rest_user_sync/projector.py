"""
Projection of remote records onto local identities.

The IdentityProjector copies identity fields, roles, attributes and the
password credential of a RemoteRecord onto a LocalIdentity, normalizing
role and attribute names with the configured prefix.
"""

import logging
from typing import Dict, Any, Optional

from rest_user_sync.models import Credential, LocalIdentity, RemoteRecord, current_time_millis
from rest_user_sync.store import StoreSession

logger = logging.getLogger(__name__)

# Client names of this length or shorter are never looked up
ROLE_CLIENT_MIN_LENGTH = 3

# Standard OpenID Connect ID token claims, never prefixed nor upper-cased
OIDC_STANDARD_CLAIMS = frozenset([
    'nonce', 'auth_time', 'session_state', 'at_hash', 'c_hash', 's_hash',
    'name', 'given_name', 'family_name', 'middle_name', 'nickname',
    'preferred_username', 'profile', 'picture', 'website', 'email',
    'email_verified', 'gender', 'birthdate', 'zoneinfo', 'locale',
    'phone_number', 'phone_number_verified', 'address', 'updated_at',
    'claims_locales', 'acr',
])


class OriginMismatch(Exception):
    """Raised when a local identity and a remote record do not share the same email."""
    pass


def normalize_name(name: str, prefix: Optional[str], uppercase: bool) -> str:
    """
    Normalize a remote role or attribute name.

    Standard claims pass through unchanged. Otherwise one leading
    ``<prefix>_`` is stripped, ``<prefix>_`` is prepended, and the result is
    upper-cased when requested. Applying it twice gives the same name.

    Args:
        name: Remote name
        prefix: Configured prefix, may be empty
        uppercase: Upper-case the normalized name

    Returns:
        Normalized name
    """
    if name in OIDC_STANDARD_CLAIMS:
        return name

    if prefix:
        marker = f"{prefix}_"
        if name.startswith(marker) or (uppercase and name.upper().startswith(marker.upper())):
            name = name[len(marker):]
        name = marker + name

    if uppercase:
        name = name.upper()
    return name


def prefix_marker(prefix: Optional[str], uppercase: bool) -> Optional[str]:
    """Marker identifying names owned by this source, or None for an empty prefix."""
    if not prefix:
        return None
    marker = f"{prefix}_"
    return marker.upper() if uppercase else marker


class IdentityProjector:
    """Copies remote state onto local identities."""

    def __init__(self, settings: Dict[str, Any]):
        self.settings = settings
        self.source_id = settings.get('id')
        self.prefix = settings.get('prefix') or ''
        self.uppercase = settings.get('uppercase', True)
        self.role_sync = settings.get('role_sync', True)
        self.role_client = settings.get('role_client') or ''
        self.attr_sync = settings.get('attr_sync', True)
        self.password_sync = settings.get('password_sync', False)
        self.password_algorithm = settings.get('password_algorithm') or ''
        self.password_iterations = settings.get('password_iterations') or 0
        self.marker = prefix_marker(self.prefix, self.uppercase)

    def normalize(self, name: str) -> str:
        return normalize_name(name, self.prefix, self.uppercase)

    def project(self, session: StoreSession, local: LocalIdentity, remote: RemoteRecord,
                is_creation: bool, allow_origin_override: bool) -> LocalIdentity:
        """
        Project a remote record onto a local identity.

        Args:
            session: Open store session
            local: Identity to mutate
            remote: Source record
            is_creation: The identity was created in this unit of work
            allow_origin_override: Skip the email identity guard

        Returns:
            The mutated identity

        Raises:
            OriginMismatch: If updating an identity whose email differs
        """
        if not is_creation and not allow_origin_override:
            if (local.email or '').lower() != (remote.email or '').lower():
                raise OriginMismatch(
                    f"Local and remote users are not the same email : [{remote.email} != {local.email}]"
                )

        if is_creation:
            local.federation_link = self.source_id

        local.first_name = remote.first_name
        local.last_name = remote.last_name
        local.username = remote.username.lower()
        local.email = remote.email.lower()
        local.enabled = remote.enabled
        local.email_verified = remote.enabled

        if self.role_sync:
            self._sync_roles(session, local, remote)

        if self.attr_sync:
            self._sync_attributes(local, remote)

        if self.password_sync:
            self._sync_password(session, local, remote)

        return local

    def _role_scope(self, session: StoreSession) -> Optional[str]:
        """Client receiving the roles, or None for the realm."""
        if len(self.role_client) > ROLE_CLIENT_MIN_LENGTH:
            client_id = session.get_client(self.role_client)
            if client_id is not None:
                return client_id
            logger.warning(f"Client {self.role_client} doesn't exist. Roles will be created as realm roles.")
        return None

    def _sync_roles(self, session: StoreSession, local: LocalIdentity, remote: RemoteRecord):
        client_id = self._role_scope(session)
        granted = local.role_mappings(client_id)

        if self.marker:
            stale = {role for role in granted if role.startswith(self.marker)}
            granted.difference_update(stale)

        for role in sorted(remote.roles):
            role_name = self.normalize(role)
            if session.get_role(role_name, client_id) is None:
                session.add_role(role_name, client_id)
                logger.info(f"Remote role {role} granted created")
            local.grant_role(role_name, client_id)
            logger.debug(f"Remote role {role} granted to {remote.username}")

    def _sync_attributes(self, local: LocalIdentity, remote: RemoteRecord):
        if self.marker:
            for key in [key for key in local.attributes if key.startswith(self.marker)]:
                del local.attributes[key]

        for key, values in remote.attributes.items():
            local.set_attribute(self.normalize(key), values)
            logger.debug(f"Remote attribute {key} affected to {remote.username}")

    def _sync_password(self, session: StoreSession, local: LocalIdentity, remote: RemoteRecord):
        if remote.password is None:
            logger.warning(f"Password sync enabled but no password received for {remote.username}")
            return

        existing = next(
            (c for c in session.get_stored_credentials(local) if c.type == Credential.PASSWORD),
            None
        )

        if existing is not None:
            session.update_credential(local, self._fill_credential(existing, remote))
        else:
            session.create_credential(local, self._fill_credential(Credential(), remote))
        logger.debug(f"Password credential synchronized for {remote.username}")

    def _fill_credential(self, credential: Credential, remote: RemoteRecord) -> Credential:
        credential.type = Credential.PASSWORD
        credential.algorithm = self.password_algorithm
        credential.hash_iterations = self.password_iterations
        credential.value = remote.password
        credential.created_date = current_time_millis()
        return credential
