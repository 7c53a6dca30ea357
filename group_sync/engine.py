"""
Group membership reconciliation.

For every source group whose name starts with one of the configured prefixes,
the engine finds the group of the same name at the destination (creating it if
asked to), compares both memberships by identity key, and adds or removes
destination members until they agree.
"""

import time
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from group_sync.config import SyncSettings
from group_sync.gateways.base import DirectoryGateway, GatewayError, copy_group_fields
from group_sync.identity import IdentityResolver, normalize_key, resolve_identity
from group_sync.report import MissingUserCache, RunCounters, RunReport
from group_sync.scheduler import TaskScheduler

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Copies group memberships from a source directory to a destination directory.

    Args:
        source: Gateway to the directory holding the reference memberships
        destination: Gateway to the directory being updated
        settings: Validated run settings
    """

    def __init__(self, source: DirectoryGateway, destination: DirectoryGateway, settings: SyncSettings):
        self.source = source
        self.destination = destination
        self.settings = settings

        self.counters = RunCounters()
        self.missing_users = MissingUserCache()
        self.source_resolver: Optional[IdentityResolver] = None
        self.destination_resolver: Optional[IdentityResolver] = None
        self.last_report: Optional[RunReport] = None

    @property
    def _change_level(self) -> int:
        # Changes are announced loudly when they are only simulated
        return logging.INFO if self.settings.preview else logging.DEBUG

    def reconcile(self, prefixes: Optional[Iterable[str]] = None) -> RunReport:
        """
        Run one reconciliation pass over every group matching the prefixes.

        Args:
            prefixes: Group name prefixes; defaults to the configured ones

        Returns:
            RunReport with the counters of this run

        Raises:
            GatewayError: If the source groups cannot be listed
        """
        prefixes = list(prefixes) if prefixes is not None else self.settings.group_prefixes

        self.counters.reset()
        self.missing_users.clear()
        self.source_resolver = resolve_identity(self.settings.source.user_field_name)
        self.destination_resolver = resolve_identity(self.settings.destination.user_field_name)

        if self.settings.preview:
            logger.info("Preview mode: no changes will be made at the destination")
        logger.info(f"Looking for groups starting with: {', '.join(prefixes)}")

        started = time.monotonic()
        scheduler = TaskScheduler(self.settings.threads)
        try:
            with scheduler:
                for group in self.source.list_groups_by_prefixes(prefixes):
                    scheduler.submit(self.copy_members_of_group, group, scheduler,
                                     description=f"copying members of group {group.get('displayName')}")
        finally:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self.last_report = RunReport.collect(self.counters, self.missing_users, elapsed_ms,
                                                 settings=self.settings,
                                                 failed_tasks=scheduler.failed_tasks)

        return self.last_report

    def copy_members_of_group(self, group: Dict[str, Any], scheduler: TaskScheduler):
        """Bring the destination group of the same name in line with one source group."""
        group_name = group.get('displayName')
        logger.debug(f"Copying members of group {group_name}")
        self.counters.groups.increment()

        source_members = list(self.source.list_group_members(group.get('id'), self.source_resolver))
        self.counters.source_members.increment(len(source_members))

        destination_group = self.destination.find_group_by_name(group_name)
        if destination_group is None:
            destination_group = self._handle_missing_group(group, is_empty=not source_members)
            if destination_group is None:
                return

        destination_members = list(
            self.destination.list_group_members(destination_group.get('id'), self.destination_resolver)
        )

        source_by_key = self._members_by_key(source_members, self.source_resolver, group_name, 'Source')
        destination_by_key = self._members_by_key(
            destination_members, self.destination_resolver, destination_group.get('displayName'), 'Destination'
        )

        if self.settings.create_members:
            for folded, (key, _) in source_by_key.items():
                if folded in destination_by_key or key in self.missing_users:
                    continue
                scheduler.submit(self.add_missing_member, key, destination_group,
                                 description=f"adding {key} to group {group_name}")

        if self.settings.remove_members:
            for folded, (_, user) in destination_by_key.items():
                if folded in source_by_key:
                    continue
                scheduler.submit(self.remove_stale_member, user, destination_group,
                                 description=f"removing {user.get('displayName')} from group {group_name}")

    def _handle_missing_group(self, group: Dict[str, Any], is_empty: bool) -> Optional[Dict[str, Any]]:
        group_name = group.get('displayName')
        if is_empty and not self.settings.allow_empty_groups:
            logger.warning(f"Empty missing group ignored: {group_name}")
            return None

        self.counters.missing_groups.increment()
        if not self.settings.create_missing_groups:
            logger.warning(f"Missing group at destination: {group_name}")
            return None

        try:
            return self.create_missing_group(group['id'])
        except GatewayError as e:
            self.counters.group_creation_errors.increment()
            logger.warning(f"Failed to create group at destination: {group_name}: {e}")
            return None

    def _members_by_key(self, members: Iterable[Dict[str, Any]], resolver: IdentityResolver,
                        group_name: str, side: str) -> Dict[str, Tuple[str, Dict[str, Any]]]:
        """Index members by folded identity key, keeping the first user seen for each key."""
        indexed = {}
        for user in members:
            key = resolver.key_of(user)
            if key is None:
                logger.warning(f"{side} group member has undefined attribute value "
                               f"(user ignored in {side.lower()}): {user.get('displayName')}, group {group_name}")
                continue
            folded = normalize_key(key)
            if folded in indexed:
                logger.debug(f"Duplicate {side.lower()} member key {key} in group {group_name}, keeping first")
                continue
            indexed[folded] = (key, user)
        return indexed

    def create_missing_group(self, source_group_id: str) -> Dict[str, Any]:
        """
        Create at the destination a copy of a source group.

        In preview mode the copy is returned unsaved and without an id.

        Raises:
            GatewayError: If the source group cannot be read or the creation fails
        """
        source_group = self.source.get_group(source_group_id)
        if source_group is None:
            raise GatewayError(f"Group {source_group_id} no longer exists at {self.source.name}")

        logger.log(self._change_level, f"Creating new group at destination: {source_group.get('displayName')}")
        new_group = copy_group_fields(source_group)
        if self.settings.preview:
            return new_group

        created = self.destination.create_group(new_group)
        self.counters.groups_created.increment()
        return created

    def add_missing_member(self, key: str, group: Dict[str, Any]):
        """Look up a user at the destination by identity key and add it to the group."""
        user = self.destination.find_user_by_key(key, self.destination_resolver)
        if user is None:
            if self.missing_users.add(key):
                logger.warning(f"Missing user at destination: {key}")
            return

        try:
            self.add_member(user, group)
        except GatewayError as e:
            self.counters.member_creation_errors.increment()
            logger.warning(f"Failed to include user {user.get('displayName')} as member of group "
                           f"{group.get('displayName')} at destination: {e}")

    def remove_stale_member(self, user: Dict[str, Any], group: Dict[str, Any]):
        try:
            self.remove_member(user, group)
        except GatewayError as e:
            self.counters.member_removal_errors.increment()
            logger.warning(f"Failed to remove user {user.get('displayName')} as member of group "
                           f"{group.get('displayName')} at destination: {e}")

    def add_member(self, user: Dict[str, Any], group: Dict[str, Any]):
        logger.log(self._change_level,
                   f"Including user {user.get('displayName')} as member of group {group.get('displayName')}")
        if self.settings.preview:
            return
        self.destination.add_member(group['id'], user['id'])
        self.counters.members_created.increment()

    def remove_member(self, user: Dict[str, Any], group: Dict[str, Any]):
        logger.log(self._change_level,
                   f"Excluding user {user.get('displayName')} as member of group {group.get('displayName')}")
        if self.settings.preview:
            return
        self.destination.remove_member(group['id'], user['id'])
        self.counters.members_removed.increment()
