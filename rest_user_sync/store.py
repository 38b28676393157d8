"""
Local identity store interface and implementations.

The sync engine consumes the store only through a unit of work: each call to
``IdentityStore.unit_of_work()`` yields a fresh StoreSession whose changes are
committed when the block exits cleanly and discarded when it raises.
"""

import os
import copy
import uuid
import yaml
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Any, List, Optional

from rest_user_sync.models import Credential, LocalIdentity

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a unit of work cannot be committed (constraint violation, storage failure)."""
    pass


class StoreSession(ABC):
    """Operations available inside one unit of work."""

    @abstractmethod
    def find_by_username(self, username: str) -> Optional[LocalIdentity]:
        """Look up an identity in the primary local index."""
        pass

    @abstractmethod
    def find_in_storage(self, username: str) -> Optional[LocalIdentity]:
        """Look up an identity through every storage layer, not only the local index."""
        pass

    @abstractmethod
    def create_identity(self, username: str) -> LocalIdentity:
        pass

    @abstractmethod
    def remove_identity(self, identity_id: str) -> bool:
        pass

    @abstractmethod
    def evict_from_cache(self, identity_id: str):
        pass

    @abstractmethod
    def get_client(self, client_id: str) -> Optional[str]:
        """Return the client id if such a client exists."""
        pass

    @abstractmethod
    def get_role(self, name: str, client_id: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    def add_role(self, name: str, client_id: Optional[str] = None) -> str:
        pass

    @abstractmethod
    def get_stored_credentials(self, identity: LocalIdentity) -> List[Credential]:
        pass

    @abstractmethod
    def create_credential(self, identity: LocalIdentity, credential: Credential) -> Credential:
        pass

    @abstractmethod
    def update_credential(self, identity: LocalIdentity, credential: Credential) -> Credential:
        pass


class IdentityStore(ABC):
    """A local identity store for one realm."""

    realm = 'master'

    @abstractmethod
    def unit_of_work(self):
        """
        Context manager yielding a StoreSession.

        Commits on clean exit, rolls back and re-raises on exception.

        Raises:
            PersistenceError: If the commit fails
        """
        pass


def _empty_state() -> Dict[str, Any]:
    return {'identities': {}, 'realm_roles': set(), 'clients': {}}


class InMemorySession(StoreSession):
    """Session over a private working copy of the store state."""

    def __init__(self, store: 'InMemoryIdentityStore', state: Dict[str, Any]):
        self.store = store
        self.state = state

    def _identities(self) -> Dict[str, LocalIdentity]:
        return self.state['identities']

    def find_by_username(self, username: str) -> Optional[LocalIdentity]:
        if not username:
            return None
        wanted = username.lower()
        for identity in self._identities().values():
            if identity.username.lower() == wanted:
                return identity
        return None

    def find_in_storage(self, username: str) -> Optional[LocalIdentity]:
        identity = self.find_by_username(username)
        if identity is not None:
            return identity
        if not username:
            return None
        return self.store.storage_identities.get(username.lower())

    def create_identity(self, username: str) -> LocalIdentity:
        if self.find_by_username(username) is not None:
            raise PersistenceError(f"User exists with same username: {username}")
        identity = LocalIdentity(id=str(uuid.uuid4()), username=username.lower())
        self._identities()[identity.id] = identity
        logger.debug(f"Added user {identity.username} ({identity.id}) to realm {self.store.realm}")
        return identity

    def remove_identity(self, identity_id: str) -> bool:
        return self._identities().pop(identity_id, None) is not None

    def evict_from_cache(self, identity_id: str):
        self.store.evict(identity_id)

    def get_client(self, client_id: str) -> Optional[str]:
        return client_id if client_id in self.state['clients'] else None

    def get_role(self, name: str, client_id: Optional[str] = None) -> Optional[str]:
        roles = self.state['realm_roles'] if client_id is None else self.state['clients'].get(client_id, set())
        return name if name in roles else None

    def add_role(self, name: str, client_id: Optional[str] = None) -> str:
        if client_id is None:
            self.state['realm_roles'].add(name)
        else:
            if client_id not in self.state['clients']:
                raise PersistenceError(f"Client not found: {client_id}")
            self.state['clients'][client_id].add(name)
        return name

    def get_stored_credentials(self, identity: LocalIdentity) -> List[Credential]:
        return list(identity.credentials)

    def create_credential(self, identity: LocalIdentity, credential: Credential) -> Credential:
        if not credential.id:
            credential.id = str(uuid.uuid4())
        identity.credentials.append(credential)
        return credential

    def update_credential(self, identity: LocalIdentity, credential: Credential) -> Credential:
        for index, existing in enumerate(identity.credentials):
            if existing.id == credential.id:
                identity.credentials[index] = credential
                return credential
        raise PersistenceError(f"Credential not found: {credential.id}")


class InMemoryIdentityStore(IdentityStore):
    """
    Identity store held in process memory.

    Each unit of work runs against a deep copy of the committed state, so a
    failing unit of work leaves the store untouched. Uniqueness of usernames
    and emails is checked at commit.
    """

    def __init__(self, realm: str = 'master', clients: Optional[List[str]] = None):
        self.realm = realm
        self._state = _empty_state()
        for client_id in clients or []:
            self._state['clients'].setdefault(client_id, set())

        # Identities reachable only through other storage providers
        self.storage_identities = {}

        # Read cache of identities by id
        self.cache = {}
        self._lock = threading.RLock()

    @contextmanager
    def unit_of_work(self):
        with self._lock:
            working = copy.deepcopy(self._state)
            session = InMemorySession(self, working)
            try:
                yield session
            except Exception:
                logger.debug("Rolling back unit of work")
                raise
            self._check_constraints(working)
            self._persist(working)
            self._state = working

    def _check_constraints(self, state: Dict[str, Any]):
        usernames = set()
        emails = set()
        for identity in state['identities'].values():
            username = identity.username.lower()
            if username in usernames:
                raise PersistenceError(f"User exists with same username: {identity.username}")
            usernames.add(username)

            if identity.email:
                email = identity.email.lower()
                if email in emails:
                    raise PersistenceError(f"User exists with same email: {identity.email}")
                emails.add(email)

    def _persist(self, state: Dict[str, Any]):
        """Write a state about to be committed; raising keeps the previous state."""
        pass

    def evict(self, identity_id: str):
        if self.cache.pop(identity_id, None) is not None:
            logger.debug(f"Evicted user {identity_id} from cache")

    def get_cached(self, username: str) -> Optional[LocalIdentity]:
        """Read path used by consumers of the store; fills the cache."""
        identity = self.get_identity(username)
        if identity is not None:
            self.cache[identity.id] = identity
        return identity

    def get_identity(self, username: str) -> Optional[LocalIdentity]:
        """Snapshot of a committed identity, or None."""
        with self._lock:
            wanted = username.lower()
            for identity in self._state['identities'].values():
                if identity.username.lower() == wanted:
                    return copy.deepcopy(identity)
        return None

    def list_identities(self) -> List[LocalIdentity]:
        with self._lock:
            return sorted((copy.deepcopy(i) for i in self._state['identities'].values()),
                          key=lambda i: i.username)

    def add_identity(self, identity: LocalIdentity):
        """Insert an identity directly into the committed state."""
        with self._lock:
            self._state['identities'][identity.id] = copy.deepcopy(identity)
            self._persist(self._state)

    def add_storage_identity(self, identity: LocalIdentity):
        """Register an identity visible only through the storage layer."""
        self.storage_identities[identity.username.lower()] = identity

    def add_client(self, client_id: str):
        with self._lock:
            self._state['clients'].setdefault(client_id, set())
            self._persist(self._state)

    def realm_roles(self) -> List[str]:
        with self._lock:
            return sorted(self._state['realm_roles'])

    def client_roles(self, client_id: str) -> List[str]:
        with self._lock:
            return sorted(self._state['clients'].get(client_id, set()))


class YamlIdentityStore(InMemoryIdentityStore):
    """In-memory store persisted to a YAML file after every commit."""

    def __init__(self, path: str, realm: str = 'master', clients: Optional[List[str]] = None):
        super().__init__(realm=realm, clients=clients)
        self.path = path
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            logger.info(f"Identity store file {self.path} not found, starting empty")
            return

        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise PersistenceError(f"Invalid YAML in identity store {self.path}: {e}")

        self._state['realm_roles'] = set(data.get('realm_roles') or [])
        for client_id, roles in (data.get('clients') or {}).items():
            self._state['clients'][client_id] = set(roles or [])
        for item in data.get('identities') or []:
            identity = LocalIdentity.from_dict(item)
            self._state['identities'][identity.id] = identity

        logger.info(f"Loaded {len(self._state['identities'])} identities from {self.path}")

    def _persist(self, state: Dict[str, Any]):
        data = {
            'realm': self.realm,
            'realm_roles': sorted(state['realm_roles']),
            'clients': {client_id: sorted(roles) for client_id, roles in state['clients'].items()},
            'identities': [identity.to_dict() for identity in
                           sorted(state['identities'].values(), key=lambda i: i.username)],
        }

        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile('w', dir=directory, delete=False, suffix='.tmp') as f:
                tmp_path = f.name
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.path)
        except (OSError, yaml.YAMLError) as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise PersistenceError(f"Failed to write identity store {self.path}: {e}")


def create_store(config: Dict[str, Any]) -> IdentityStore:
    """
    Build the identity store described by the ``store`` configuration section.

    Args:
        config: Store configuration dictionary

    Returns:
        IdentityStore instance
    """
    store_type = config.get('type', 'memory')
    realm = config.get('realm', 'master')
    clients = config.get('clients') or []

    if store_type == 'yaml':
        return YamlIdentityStore(config['path'], realm=realm, clients=clients)
    return InMemoryIdentityStore(realm=realm, clients=clients)
