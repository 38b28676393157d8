"""
Data model for REST User Sync.

Remote records as fetched from the directory, the page envelope used while
paginating, local identities owned by the identity store, and the result
accumulator returned by a sync run.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Any, Optional, Set

from rest_user_sync.config import parse_bool


@dataclass(frozen=True)
class RemoteRecord:
    """One identity as published by the remote directory."""

    username: Optional[str]
    email: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    enabled: bool = False
    roles: frozenset = frozenset()
    attributes: Dict[str, List[str]] = field(default_factory=dict)
    password: Optional[str] = None

    def __hash__(self):
        return hash((self.username, self.email))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RemoteRecord':
        """
        Build a record from a directory JSON object.

        Args:
            data: Decoded JSON object (``userName``, ``email``, ``firstName``,
                ``lastName``, ``enabled``, ``roles``, ``attributes``, ``password``)

        Returns:
            RemoteRecord instance
        """
        attributes = {}
        for key, values in (data.get('attributes') or {}).items():
            if values is None:
                attributes[key] = []
            elif isinstance(values, list):
                attributes[key] = [str(v) for v in values]
            else:
                attributes[key] = [str(values)]

        return cls(
            username=data.get('userName', data.get('username')),
            email=data.get('email'),
            first_name=data.get('firstName'),
            last_name=data.get('lastName'),
            enabled=parse_bool(data.get('enabled', False)),
            roles=frozenset(data.get('roles') or []),
            attributes=attributes,
            password=data.get('password'),
        )

    def is_eligible(self) -> bool:
        """A record can be projected only with a username and an email."""
        return bool(self.username) and bool(self.email)


@dataclass
class PageEnvelope:
    """One page of a directory response with its paging headers."""

    body: str
    page_index: Optional[str] = None
    total_pages: Optional[str] = None
    per_page: Optional[str] = None


class SyncMode:
    """Selects between a full fetch and a fetch of users updated since a timestamp."""

    FULL = 'full'
    UPDATED = 'updated'

    def __init__(self, kind: str, since: Optional[datetime] = None):
        self.kind = kind
        self.since = since

    @classmethod
    def full(cls) -> 'SyncMode':
        return cls(cls.FULL)

    @classmethod
    def updated_since(cls, since: datetime) -> 'SyncMode':
        return cls(cls.UPDATED, since)

    @property
    def is_full(self) -> bool:
        return self.kind == self.FULL

    def __repr__(self):
        if self.is_full:
            return 'SyncMode.full()'
        return f'SyncMode.updated_since({self.since!r})'


def current_time_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class Credential:
    """Stored credential of a local identity."""

    PASSWORD = 'password'

    id: Optional[str] = None
    type: str = PASSWORD
    algorithm: Optional[str] = None
    hash_iterations: int = 0
    value: Optional[str] = None
    created_date: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'algorithm': self.algorithm,
            'hash_iterations': self.hash_iterations,
            'value': self.value,
            'created_date': self.created_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Credential':
        return cls(
            id=data.get('id'),
            type=data.get('type', cls.PASSWORD),
            algorithm=data.get('algorithm'),
            hash_iterations=data.get('hash_iterations', 0),
            value=data.get('value'),
            created_date=data.get('created_date'),
        )


@dataclass
class LocalIdentity:
    """
    Identity held by the local store.

    The sync engine mutates identities inside a unit of work but never owns
    their lifecycle; creation and removal go through the store session.
    """

    id: str
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    enabled: bool = False
    email_verified: bool = False
    federation_link: Optional[str] = None
    realm_roles: Set[str] = field(default_factory=set)
    client_roles: Dict[str, Set[str]] = field(default_factory=dict)
    attributes: Dict[str, List[str]] = field(default_factory=dict)
    credentials: List[Credential] = field(default_factory=list)
    created_timestamp: int = field(default_factory=current_time_millis)

    def role_mappings(self, client_id: Optional[str] = None) -> Set[str]:
        """Granted role names in the realm scope or in a client scope."""
        if client_id is None:
            return self.realm_roles
        return self.client_roles.setdefault(client_id, set())

    def grant_role(self, role_name: str, client_id: Optional[str] = None):
        self.role_mappings(client_id).add(role_name)

    def set_attribute(self, name: str, values: List[str]):
        self.attributes[name] = list(values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'enabled': self.enabled,
            'email_verified': self.email_verified,
            'federation_link': self.federation_link,
            'realm_roles': sorted(self.realm_roles),
            'client_roles': {client: sorted(roles) for client, roles in self.client_roles.items()},
            'attributes': {key: list(values) for key, values in self.attributes.items()},
            'credentials': [credential.to_dict() for credential in self.credentials],
            'created_timestamp': self.created_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LocalIdentity':
        return cls(
            id=data['id'],
            username=data['username'],
            email=data.get('email'),
            first_name=data.get('first_name'),
            last_name=data.get('last_name'),
            enabled=data.get('enabled', False),
            email_verified=data.get('email_verified', False),
            federation_link=data.get('federation_link'),
            realm_roles=set(data.get('realm_roles') or []),
            client_roles={client: set(roles) for client, roles in (data.get('client_roles') or {}).items()},
            attributes={key: list(values) for key, values in (data.get('attributes') or {}).items()},
            credentials=[Credential.from_dict(c) for c in data.get('credentials') or []],
            created_timestamp=data.get('created_timestamp') or current_time_millis(),
        )


class SyncResult:
    """
    Tally of a single sync run.

    Created once per run and mutated by the orchestrator. Once frozen the
    counters can no longer change.
    """

    def __init__(self, added: int = 0, updated: int = 0, removed: int = 0, failed: int = 0):
        self.added = added
        self.updated = updated
        self.removed = removed
        self.failed = failed
        self._frozen = False

    @classmethod
    def empty(cls) -> 'SyncResult':
        return cls().freeze()

    def _check_mutable(self):
        if self._frozen:
            raise RuntimeError("SyncResult is frozen")

    def increase_added(self, count: int = 1):
        self._check_mutable()
        self.added += count

    def increase_updated(self, count: int = 1):
        self._check_mutable()
        self.updated += count

    def increase_removed(self, count: int = 1):
        self._check_mutable()
        self.removed += count

    def increase_failed(self, count: int = 1):
        self._check_mutable()
        self.failed += count

    def merge(self, other: 'SyncResult') -> 'SyncResult':
        """Add the counters of another result into this one."""
        self._check_mutable()
        self.added += other.added
        self.updated += other.updated
        self.removed += other.removed
        self.failed += other.failed
        return self

    def freeze(self) -> 'SyncResult':
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def to_dict(self) -> Dict[str, int]:
        return {
            'added': self.added,
            'updated': self.updated,
            'removed': self.removed,
            'failed': self.failed,
        }

    def __eq__(self, other):
        if not isinstance(other, SyncResult):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (f"SyncResult(added={self.added}, updated={self.updated}, "
                f"removed={self.removed}, failed={self.failed})")

    def __str__(self):
        return (f"{self.added} imported users, {self.updated} updated users, "
                f"{self.removed} removed users, {self.failed} users failed sync")
