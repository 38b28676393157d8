"""
Synchronization engine.

The SyncOrchestrator runs one sync: by-pass check, paginated fetch,
deduplication, then one isolated unit of work per record deciding between
creation, update and rejection. A failed creation is compensated by a
second unit of work removing whatever was left behind.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional, Tuple

from rest_user_sync.config import evaluate_by_pass
from rest_user_sync.dedup import Deduplicator
from rest_user_sync.fetcher import PageFetcher
from rest_user_sync.logging_setup import AuditLogger, audit_logger
from rest_user_sync.models import LocalIdentity, RemoteRecord, SyncMode, SyncResult
from rest_user_sync.projector import IdentityProjector, OriginMismatch
from rest_user_sync.store import IdentityStore, StoreSession

logger = logging.getLogger(__name__)

ADDED = 'added'
UPDATED = 'updated'
REJECTED = 'rejected'
SKIPPED = 'skipped'


class SyncOrchestrator:
    """
    Reconciles remote records into the local identity store.

    Records are processed sequentially in ascending username order; every
    record gets exactly one attempt per run.
    """

    def __init__(self, settings: Dict[str, Any], fetcher: PageFetcher, store: IdentityStore,
                 projector: Optional[IdentityProjector] = None, notifier=None,
                 deduplicator: Optional[Deduplicator] = None, audit: Optional[AuditLogger] = None):
        """
        Initialize the orchestrator.

        Args:
            settings: Flat federation settings (see ``config.build_settings``)
            fetcher: Page fetcher over the remote directory
            store: Local identity store
            projector: Field projector, built from settings if omitted
            notifier: Post-provisioning notifier, optional
            deduplicator: Record deduplicator
            audit: Audit logger
        """
        self.settings = settings
        self.fetcher = fetcher
        self.store = store
        self.projector = projector or IdentityProjector(settings)
        self.notifier = notifier
        self.deduplicator = deduplicator or Deduplicator()
        self.audit = audit or audit_logger

        self.source_id = settings.get('id')
        self.name = settings.get('name') or self.source_id

        # Number of records fetched by the last run, None if it was by-passed
        self.last_fetch_count = None

    def sync_full(self) -> SyncResult:
        """Synchronize every user of the remote directory."""
        return self._sync(SyncMode.full())

    def sync_since(self, timestamp: datetime) -> SyncResult:
        """Synchronize the users updated since the given timestamp."""
        return self._sync(SyncMode.updated_since(timestamp))

    def _sync(self, mode: SyncMode) -> SyncResult:
        self.last_fetch_count = None

        if evaluate_by_pass(self.settings.get('by_pass')):
            logger.warning(f"By Pass Federation '{self.name}'")
            return SyncResult.empty()

        result = SyncResult()
        records = self.fetcher.fetch_all(mode)
        self.last_fetch_count = len(records)

        if not records:
            logger.error("No users fetched. Check networking issue (see logs).")
        else:
            logger.info(f"[{self.name}] Federation starting for '{len(records)}' users")
            for record in self.deduplicator.clean(records, result):
                self._process(record, result)

        logger.info(f"[{self.name}] Federation ended: '{result}'")
        self.audit.log_run(self.source_id, mode.kind, str(result))
        return result.freeze()

    def _process(self, record: RemoteRecord, result: SyncResult):
        """Run one record through its own unit of work and tally the outcome."""
        if not record.is_eligible():
            result.increase_failed()
            logger.warning(f"Missing attributes (user,email ?) for {record.username or ''} ({record.email or ''})")
            self.audit.log_identity_operation('reject', record.username or '', self.source_id, False)
            return

        # Set once the record enters the create path
        creating = [False]

        try:
            with self.store.unit_of_work() as session:
                outcome, identity = self._reconcile(session, record, creating)

        except OriginMismatch as e:
            logger.error(f"Failed during import user from REST: {e}")
            result.increase_failed()
            self.audit.log_identity_operation('update', record.username, self.source_id, False)
            self.audit.log_security_event('Origin mismatch', str(e))
            return

        except Exception as e:
            logger.warning(f"Failed during import user from REST: {record.username}: {e}")
            result.increase_failed()
            self.audit.log_identity_operation('create' if creating[0] else 'update',
                                              record.username, self.source_id, False)
            if creating[0]:
                self._compensate(record)
            return

        if outcome == ADDED:
            result.increase_added()
            self.audit.log_identity_operation('create', record.username, self.source_id, True)
            self._notify(identity)
        elif outcome == UPDATED:
            result.increase_updated()
            self.audit.log_identity_operation('update', record.username, self.source_id, True)
        elif outcome == REJECTED:
            result.increase_failed()
            self.audit.log_identity_operation('update', record.username, self.source_id, False)

    def _reconcile(self, session: StoreSession, record: RemoteRecord,
                   creating: list) -> Tuple[str, Optional[LocalIdentity]]:
        """Decide and apply the action for one record inside a unit of work."""
        username = record.username
        allow_override = self.settings.get('uncheck_federation', False)
        local = session.find_by_username(username)

        if local is None:
            if self.settings.get('not_create_users', False):
                logger.debug(f"notCreateUsers mode: Skip this users {username}")
                return SKIPPED, None

            stored = session.find_in_storage(username)
            if stored is not None:
                session.evict_from_cache(stored.id)
                logger.debug(f"User {username} exists in storage, evicting it from cache")
                return SKIPPED, None

            creating[0] = True
            local = session.create_identity(username)
            self.projector.project(session, local, record, True, allow_override)
            logger.debug(f"Imported new user from Rest. Username: [{local.username}], "
                         f"Email: [{local.email}] for Realm: [{self.store.realm}]")
            return ADDED, local

        linked = local.federation_link == self.source_id or allow_override
        if linked and username.lower() == local.username.lower():
            self.projector.project(session, local, record, False, allow_override)
            session.evict_from_cache(local.id)
            logger.debug(f"Updated user from REST: {local.username}")
            return UPDATED, local

        logger.warning(f"User '{username}' is not updated during sync as it already exists in the local store "
                       f"but is not linked to federation provider '{self.name}'")
        return REJECTED, None

    def _compensate(self, record: RemoteRecord):
        """Remove an identity left behind by a failed creation."""
        try:
            with self.store.unit_of_work() as session:
                existing = session.find_by_username(record.username)
                if existing is not None:
                    session.evict_from_cache(existing.id)
                    session.remove_identity(existing.id)
                    logger.info(f"Removed partially imported user {record.username}")
        except Exception as e:
            logger.error(f"Failed to remove partially imported user {record.username}: {e}")

    def _notify(self, identity: Optional[LocalIdentity]):
        actions = self.settings.get('reset_actions') or []
        if self.notifier is None or identity is None or not actions:
            return
        self.notifier.notify(identity, actions)
