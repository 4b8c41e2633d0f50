"""Authoritative block state.

The block store owns the set of active blocks, the bounded blocking history,
and per-IP offense counts. Every mutation is committed to the durable
``BlockRepository`` first and only then applied in memory, so a failed write
leaves the in-memory view unchanged.

Expiry is lazy: an expired record is released the first time it is looked at
(or by the periodic sweep), which appends exactly one ``unblocked`` history
entry with reason ``expired``. Whitelisted IPs are never reported as blocked;
a record left over for an IP that has since been whitelisted is released with
reason ``whitelisted``.
"""

import logging
from collections import deque
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional

from ip_risk_shield.concurrency import StripedLock
from ip_risk_shield.config import SettingsManager
from ip_risk_shield.exceptions import PersistenceError, WhitelistedIPError
from ip_risk_shield.models import BlockRecord, HistoryAction, HistoryEntry, utcnow, validate_ip
from ip_risk_shield.storage import BlockRepository, InMemoryBlockRepository

logger = logging.getLogger(__name__)

EXPIRED_REASON = "expired"
WHITELISTED_REASON = "whitelisted"

BlockListener = Callable[[HistoryEntry, BlockRecord], None]


class BlockStore:
    """Thread-safe store of active blocks backed by a durable repository."""

    def __init__(
        self,
        repository: Optional[BlockRepository] = None,
        settings: Optional[SettingsManager] = None,
        stripes: int = 64,
    ):
        self._settings = settings or SettingsManager()
        self.repository = repository or InMemoryBlockRepository(
            history_limit=self._settings.settings.history_limit
        )
        self._locks = StripedLock(stripes)
        self._records: List[Dict[str, BlockRecord]] = [{} for _ in range(stripes)]
        self._offenses: List[Dict[str, int]] = [{} for _ in range(stripes)]
        self._history: Deque[HistoryEntry] = deque(maxlen=self._settings.settings.history_limit)
        self._history_lock = Lock()
        self._listeners: List[BlockListener] = []

    def load(self) -> int:
        """Rehydrate memory from the repository; returns the number of active blocks."""
        records = self.repository.load_active()
        offenses = self.repository.load_offense_counts()
        history = self.repository.load_history(self._settings.settings.history_limit)

        for record in records:
            index = self._locks.index(record.ip)
            with self._locks.at(index):
                self._records[index][record.ip] = record
        for ip, count in offenses.items():
            index = self._locks.index(ip)
            with self._locks.at(index):
                self._offenses[index][ip] = count
        with self._history_lock:
            self._history.extend(history)

        released = self.release_whitelisted()
        logger.info(f"Loaded {len(records)} active blocks and {len(history)} history entries")
        return len(records) - released

    def add_listener(self, listener: BlockListener) -> None:
        """Register a callback invoked after every block or unblock transition."""
        self._listeners.append(listener)

    def is_whitelisted(self, ip: str) -> bool:
        return validate_ip(ip) in self._settings.settings.whitelist

    def is_blocked(self, ip: str) -> bool:
        return self.get(ip) is not None

    def get(self, ip: str) -> Optional[BlockRecord]:
        """Return the active record for an IP.

        Expired records and records for whitelisted IPs are released first and
        reported as not blocked.
        """
        ip = validate_ip(ip)
        whitelisted = ip in self._settings.settings.whitelist
        index = self._locks.index(ip)
        with self._locks.at(index):
            record = self._records[index].get(ip)
            if record is None:
                return None
            if whitelisted:
                released = self._release_locked(index, record, WHITELISTED_REASON)
            elif record.is_expired():
                released = self._release_locked(index, record, EXPIRED_REASON)
            else:
                return record

        if released is not None:
            self._notify(*released)
        return None

    def block(self, record: BlockRecord) -> BlockRecord:
        """Create or overwrite the active block for ``record.ip``."""
        ip = validate_ip(record.ip)
        if ip in self._settings.settings.whitelist:
            raise WhitelistedIPError(ip)
        record = replace(record, ip=ip, is_active=True)

        entry = HistoryEntry(
            ip=ip,
            action=HistoryAction.BLOCKED,
            reason=record.reason,
            timestamp=record.created_at,
            risk_score=record.risk_score,
            category=record.category,
            is_automatic=record.is_automatic,
            expires_at=record.expires_at,
        )

        index = self._locks.index(ip)
        with self._locks.at(index):
            self._persist(record, entry)
            self._records[index][ip] = record
            self._append_history(entry)

        expiry = record.expires_at.isoformat() if record.expires_at else "never"
        logger.info(f"Blocked {ip} (score {record.risk_score:.1f}, expires {expiry}): {record.reason}")
        self._notify(entry, record)
        return record

    def unblock(self, ip: str, reason: str) -> bool:
        """Release an active block. Returns False if the IP was not blocked.

        A record that has already expired is released as ``expired`` and the
        call still returns False.
        """
        ip = validate_ip(ip)
        index = self._locks.index(ip)
        with self._locks.at(index):
            record = self._records[index].get(ip)
            if record is None:
                return False
            expired = record.is_expired()
            released = self._release_locked(index, record, EXPIRED_REASON if expired else reason)

        if released is None:
            return False
        if expired:
            self._notify(*released)
            return False
        logger.info(f"Unblocked {ip}: {reason}")
        self._notify(*released)
        return True

    def list_active(self) -> List[BlockRecord]:
        """Return every unexpired active block, releasing stale ones on the way."""
        now = utcnow()
        whitelist = self._settings.settings.whitelist
        active: List[BlockRecord] = []
        for index in range(self._locks.stripes):
            with self._locks.at(index):
                records = list(self._records[index].values())
            for record in records:
                if record.is_expired(now) or record.ip in whitelist:
                    self.get(record.ip)
                else:
                    active.append(record)
        return active

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Release every expired block; returns the number released."""
        now = now or utcnow()
        released = []
        for index in range(self._locks.stripes):
            with self._locks.at(index):
                expired = [r for r in self._records[index].values() if r.is_expired(now)]
                for record in expired:
                    result = self._release_locked(index, record, EXPIRED_REASON, now)
                    if result is not None:
                        released.append(result)

        for entry, record in released:
            self._notify(entry, record)
        if released:
            logger.info(f"Expired {len(released)} blocks")
        return len(released)

    def release_whitelisted(self) -> int:
        """Release every block held for a whitelisted IP; returns the number released."""
        whitelist = self._settings.settings.whitelist
        released = []
        for index in range(self._locks.stripes):
            with self._locks.at(index):
                stale = [r for r in self._records[index].values() if r.ip in whitelist]
                for record in stale:
                    result = self._release_locked(index, record, WHITELISTED_REASON)
                    if result is not None:
                        released.append(result)

        for entry, record in released:
            self._notify(entry, record)
        if released:
            logger.info(f"Released {len(released)} blocks for whitelisted IPs")
        return len(released)

    def history(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Most recent history entries, oldest first."""
        with self._history_lock:
            entries = list(self._history)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def offense_count(self, ip: str) -> int:
        ip = validate_ip(ip)
        index = self._locks.index(ip)
        with self._locks.at(index):
            return self._offenses[index].get(ip, 0)

    def record_offense(self, ip: str) -> int:
        """Increment and persist the offense count for an IP."""
        ip = validate_ip(ip)
        index = self._locks.index(ip)
        with self._locks.at(index):
            count = self._offenses[index].get(ip, 0) + 1
            try:
                self.repository.save_offense_count(ip, count)
            except PersistenceError:
                raise
            except Exception as e:
                raise PersistenceError(f"Failed to persist offense count for {ip}: {e}", {"ip": ip}) from e
            self._offenses[index][ip] = count
            return count

    def __len__(self) -> int:
        return sum(len(records) for records in self._records)

    def _release_locked(self, index: int, record: BlockRecord, reason: str,
                        now: Optional[datetime] = None):
        """Deactivate a record; caller holds the stripe lock."""
        released = replace(record, is_active=False)
        entry = HistoryEntry(
            ip=record.ip,
            action=HistoryAction.UNBLOCKED,
            reason=reason,
            timestamp=now or utcnow(),
            risk_score=record.risk_score,
            category=record.category,
            is_automatic=record.is_automatic,
            expires_at=record.expires_at,
        )
        try:
            self._persist(released, entry)
        except PersistenceError as e:
            logger.error(f"Could not release block for {record.ip}: {e}")
            if reason in (EXPIRED_REASON, WHITELISTED_REASON):
                # Retried on the next lookup or sweep
                return None
            raise

        del self._records[index][record.ip]
        self._append_history(entry)
        return entry, released

    def _persist(self, record: BlockRecord, entry: HistoryEntry) -> None:
        try:
            self.repository.save(record, entry)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to persist block record for {record.ip}: {e}",
                                   {"ip": record.ip}) from e

    def _append_history(self, entry: HistoryEntry) -> None:
        with self._history_lock:
            self._history.append(entry)

    def _notify(self, entry: HistoryEntry, record: BlockRecord) -> None:
        for listener in self._listeners:
            try:
                listener(entry, record)
            except Exception as e:
                logger.error(f"Block listener failed for {entry.ip}: {e}")
