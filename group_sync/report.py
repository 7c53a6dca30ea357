"""
Run statistics for a reconciliation run.

Counters and the missing-user cache are shared by every worker thread, so all
of them guard their state with their own lock.
"""

import threading
from typing import Any, Dict, Optional

from group_sync.identity import normalize_key


class Counter:
    """Monotonic counter safe for concurrent increments."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, amount: int = 1):
        with self._lock:
            self._value += amount

    def reset(self):
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class RunCounters:
    """The fixed set of counters collected during a run."""

    NAMES = (
        'groups',
        'missing_groups',
        'groups_created',
        'group_creation_errors',
        'source_members',
        'members_created',
        'member_creation_errors',
        'members_removed',
        'member_removal_errors',
    )

    def __init__(self):
        for name in self.NAMES:
            setattr(self, name, Counter())

    def reset(self):
        for name in self.NAMES:
            getattr(self, name).reset()

    def snapshot(self) -> Dict[str, int]:
        return {name: getattr(self, name).value for name in self.NAMES}


class MissingUserCache:
    """
    Identity keys known not to exist at the destination.

    Keys are compared case-insensitively. The cache only grows during a run.
    """

    def __init__(self):
        self._keys = set()
        self._lock = threading.Lock()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return normalize_key(key) in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def add(self, key: str) -> bool:
        """Insert a key. Returns True if the key was not cached before."""
        folded = normalize_key(key)
        with self._lock:
            if folded in self._keys:
                return False
            self._keys.add(folded)
            return True

    def clear(self):
        with self._lock:
            self._keys.clear()


class RunReport:
    """Immutable outcome of one reconciliation run."""

    def __init__(self, counts: Dict[str, int], missing_users: int, elapsed_ms: int,
                 create_missing_groups: bool = False, remove_members: bool = False,
                 preview: bool = False, failed_tasks: int = 0):
        self.counts = dict(counts)
        self.missing_users = missing_users
        self.elapsed_ms = elapsed_ms
        self.create_missing_groups = create_missing_groups
        self.remove_members = remove_members
        self.preview = preview
        self.failed_tasks = failed_tasks

    def __getitem__(self, name: str) -> int:
        return self.counts[name]

    @property
    def has_errors(self) -> bool:
        return any((
            self.counts.get('group_creation_errors', 0),
            self.counts.get('member_creation_errors', 0),
            self.counts.get('member_removal_errors', 0),
            self.failed_tasks,
        ))

    def summary(self) -> str:
        """Human readable, fixed order summary of the run."""
        counts = self.counts
        lines = [
            f"Time elapsed: {self.elapsed_ms} ms",
            f"Count of groups at source: {counts['groups']}",
            f"Count of missing groups at destination: {counts['missing_groups']}",
        ]
        if self.create_missing_groups:
            lines.append(f"Count of missing groups created: {counts['groups_created']}")
            lines.append(
                f"Count of missing groups not created due to errors: {counts['group_creation_errors']}"
            )
        lines.extend([
            f"Count of users members at source: {counts['source_members']}",
            f"Count of missing users at destination: {self.missing_users}",
            f"Count of users members created at destination: {counts['members_created']}",
            f"Count of users members not created due to errors: {counts['member_creation_errors']}",
        ])
        if self.remove_members:
            lines.append(f"Count of users members removed at destination: {counts['members_removed']}")
            lines.append(
                f"Count of users members not removed due to errors: {counts['member_removal_errors']}"
            )
        return '\n'.join(lines) + '\n'

    def as_dict(self) -> Dict[str, Any]:
        data = dict(self.counts)
        data.update({
            'missing_users': self.missing_users,
            'elapsed_ms': self.elapsed_ms,
            'preview': self.preview,
            'failed_tasks': self.failed_tasks,
        })
        return data

    @classmethod
    def collect(cls, counters: RunCounters, missing_users: MissingUserCache, elapsed_ms: int,
                settings: Optional[Any] = None, failed_tasks: int = 0) -> 'RunReport':
        """Build a report from the live counters of a finished run."""
        return cls(
            counts=counters.snapshot(),
            missing_users=len(missing_users),
            elapsed_ms=elapsed_ms,
            create_missing_groups=getattr(settings, 'create_missing_groups', False),
            remove_members=getattr(settings, 'remove_members', False),
            preview=getattr(settings, 'preview', False),
            failed_tasks=failed_tasks,
        )
