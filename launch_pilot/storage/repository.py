"""
Repository pattern for data access.

A versioned key-value table stands in for browser local storage. Ledger
entries, daily counters and cached AI results are stored in it as JSON.
Every ledger mutation is also appended to an audit table.
"""

import json
import logging
import sqlite3
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .db import DEFAULT_DB_PATH, get_connection
from .models import CreditsState, UsageEvent, UsageKind
from launch_pilot.core import ledger
from launch_pilot.core.tiers import Tier, model_for_tier

logger = logging.getLogger(__name__)

LEDGER_KEY_PREFIX = "ai_credits_v1"
IDEA_COUNT_KEY_PREFIX = "ideaGenCount"
ANONYMOUS_USER = "anonymous"

LedgerListener = Callable[[str, CreditsState], None]


class ConcurrentUpdateError(RuntimeError):
    """Raised when a compare-and-swap update keeps losing to other writers."""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the key-value and usage event tables if they don't exist.

    usage_event is an append-only ledger. No UPDATE or DELETE operations
    should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user_key TEXT NOT NULL,
                kind TEXT NOT NULL,
                amount INTEGER NOT NULL,
                feature TEXT,
                model TEXT,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                used_after INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _read_row(conn: sqlite3.Connection, key: str) -> Tuple[Optional[str], int]:
    """Return (value, version); version 0 means the key is absent."""
    row = conn.execute(
        "SELECT value, version FROM kv_store WHERE key = ?", (key,)
    ).fetchone()
    if row is None:
        return None, 0
    return row[0], row[1]


def _compare_and_set(
    conn: sqlite3.Connection,
    key: str,
    value: str,
    expected_version: int
) -> bool:
    """Write value only if the stored version still matches.

    Does not commit; the caller owns the transaction.
    """
    now = datetime.now().isoformat()
    if expected_version == 0:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO kv_store (key, value, version, updated_at) VALUES (?, ?, 1, ?)",
            (key, value, now)
        )
    else:
        cursor = conn.execute(
            "UPDATE kv_store SET value = ?, version = version + 1, updated_at = ? "
            "WHERE key = ? AND version = ?",
            (value, now, key, expected_version)
        )
    return cursor.rowcount == 1


def _insert_usage_event(conn: sqlite3.Connection, event: UsageEvent) -> None:
    conn.execute("""
        INSERT INTO usage_event
        (timestamp, user_key, kind, amount, feature, model,
         input_tokens, output_tokens, used_after)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        event.timestamp.isoformat(),
        event.user_key,
        event.kind.value,
        event.amount,
        event.feature,
        event.model,
        event.input_tokens,
        event.output_tokens,
        event.used_after
    ))


class KeyValueStore:
    """Versioned string store with local-storage semantics."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, max_retries: int = 5):
        self.db_path = db_path
        self.max_retries = max_retries

    def get(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            value, _ = _read_row(conn, key)
            return value
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO kv_store (key, value, version, updated_at) VALUES (?, ?, 1, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "version = kv_store.version + 1, updated_at = excluded.updated_at",
                (key, value, datetime.now().isoformat())
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def get_json(self, key: str) -> Any:
        """Return the decoded JSON value, or None when missing or corrupted."""
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupted JSON under key %s", key)
            return None

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value))

    def update_json(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Atomically transform a JSON value with compare-and-swap retries.

        fn receives the decoded value (None when missing or corrupted).

        Raises:
            ConcurrentUpdateError: If every attempt lost a race
        """
        for _ in range(self.max_retries):
            conn = get_connection(self.db_path)
            try:
                raw, version = _read_row(conn, key)
                try:
                    current = json.loads(raw) if raw is not None else None
                except json.JSONDecodeError:
                    current = None
                new_value = fn(current)
                if _compare_and_set(conn, key, json.dumps(new_value), version):
                    conn.commit()
                    return new_value
                conn.rollback()
            finally:
                conn.close()
        raise ConcurrentUpdateError(f"Gave up updating {key} after {self.max_retries} attempts")


class LedgerRepository:
    """Repository for per-user credit ledger entries.

    Reads fail open to a fresh free-tier entry. Writes go through a
    compare-and-swap on the row version so concurrent debits are never lost.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        max_retries: int = 5,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            max_retries: Compare-and-swap attempts before giving up
            clock: Source of the current time (used for monthly resets)
        """
        self.db_path = db_path
        self.max_retries = max_retries
        self.clock = clock
        self._listeners: List[LedgerListener] = []

    @staticmethod
    def storage_key(user_key: Optional[str]) -> str:
        return f"{LEDGER_KEY_PREFIX}_{user_key or ANONYMOUS_USER}"

    def subscribe(self, listener: LedgerListener) -> None:
        """Register a callback invoked with (storage_key, entry) after each write."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: LedgerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, key: str, entry: CreditsState) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, entry)
            except Exception:
                logger.exception("Ledger listener failed for %s", key)

    def _decode_stored(self, key: str, raw: Optional[str]) -> Optional[CreditsState]:
        """Decode a stored record as is; None when missing or corrupted."""
        if raw is None:
            return None
        try:
            return CreditsState.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning("Corrupted ledger record under %s, starting fresh: %s", key, e)
            return None

    def _current(self, key: str, stored: Optional[CreditsState], now: datetime) -> CreditsState:
        """The entry in effect now: fresh when nothing usable is stored."""
        if stored is None:
            return CreditsState.fresh(now)
        if ledger.needs_reset(stored, now):
            logger.info("Monthly reset for %s (tier %s kept)", key, stored.tier.value)
        return ledger.apply_monthly_reset(stored, now)

    def read(self, user_key: Optional[str]) -> CreditsState:
        """Read a user's ledger entry.

        Missing, unreadable or corrupted records yield a fresh free-tier
        entry with zero usage. The monthly reset is applied on read.
        """
        key = self.storage_key(user_key)
        try:
            conn = get_connection(self.db_path)
            try:
                raw, _ = _read_row(conn, key)
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning("Failed to read ledger %s, defaulting to free tier: %s", key, e)
            return CreditsState.fresh(self.clock())
        return self._current(key, self._decode_stored(key, raw), self.clock())

    def save(self, user_key: Optional[str], entry: CreditsState) -> None:
        """Overwrite a user's ledger entry unconditionally."""
        key = self.storage_key(user_key)
        KeyValueStore(self.db_path).set(key, json.dumps(entry.to_dict()))
        self._notify(key, entry)

    def update(
        self,
        user_key: Optional[str],
        fn: Callable[[CreditsState], CreditsState],
        event: Optional[Callable[[CreditsState, CreditsState], UsageEvent]] = None
    ) -> CreditsState:
        """Atomically apply fn to a user's ledger entry.

        The entry is re-read and fn re-applied whenever another writer
        committed in between. The optional event factory receives
        (before, after) and its UsageEvent is written in the same transaction.
        A monthly reset applied on the way is recorded as a RESET event.

        Raises:
            ConcurrentUpdateError: If every attempt lost a race
            ValueError: Propagated from fn
        """
        key = self.storage_key(user_key)
        for attempt in range(self.max_retries):
            conn = get_connection(self.db_path)
            try:
                raw, version = _read_row(conn, key)
                now = self.clock()
                stored = self._decode_stored(key, raw)
                before = self._current(key, stored, now)
                after = fn(before)
                if not _compare_and_set(conn, key, json.dumps(after.to_dict()), version):
                    conn.rollback()
                    logger.debug("Ledger write conflict on %s (attempt %d)", key, attempt + 1)
                    continue
                if stored is not None and before is not stored:
                    _insert_usage_event(conn, UsageEvent(
                        timestamp=now,
                        user_key=user_key or ANONYMOUS_USER,
                        kind=UsageKind.RESET,
                        amount=stored.used_this_month,
                        used_after=0
                    ))
                if event is not None:
                    _insert_usage_event(conn, event(before, after))
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
            self._notify(key, after)
            return after
        raise ConcurrentUpdateError(
            f"Gave up updating ledger {key} after {self.max_retries} attempts"
        )

    def debit(
        self,
        user_key: Optional[str],
        cost: int,
        input_tokens: int = 0,
        output_tokens: int = 0,
        feature: Optional[str] = None,
        model: Optional[str] = None
    ) -> CreditsState:
        """Consume credits and record the debit."""
        user = user_key or ANONYMOUS_USER

        def _event(before: CreditsState, after: CreditsState) -> UsageEvent:
            return UsageEvent(
                timestamp=self.clock(),
                user_key=user,
                kind=UsageKind.DEBIT,
                amount=cost,
                feature=feature,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                used_after=after.used_this_month
            )

        entry = self.update(
            user_key,
            lambda current: ledger.debit(current, cost, input_tokens, output_tokens),
            _event
        )
        logger.info(
            "Used %d credits for user %s (%s). Total used: %d/%d",
            cost, user, feature or "unspecified", entry.used_this_month, ledger.allowance(entry)
        )
        return entry

    def top_up(self, user_key: Optional[str], amount: int) -> CreditsState:
        """Add purchased credits and record the top-up."""
        return self._record_top_up(user_key, lambda current: ledger.top_up(current, amount))

    def purchase_package(self, user_key: Optional[str], index: int) -> CreditsState:
        """Top up with one of ledger.CREDIT_PACKAGES (0-based index).

        Raises:
            IndexError: If the package does not exist
        """
        return self._record_top_up(user_key, lambda current: ledger.purchase_package(current, index))

    def _record_top_up(
        self,
        user_key: Optional[str],
        fn: Callable[[CreditsState], CreditsState]
    ) -> CreditsState:
        user = user_key or ANONYMOUS_USER
        added = []

        def _event(before: CreditsState, after: CreditsState) -> UsageEvent:
            added.append(after.purchased_credits - before.purchased_credits)
            return UsageEvent(
                timestamp=self.clock(),
                user_key=user,
                kind=UsageKind.TOP_UP,
                amount=added[-1],
                used_after=after.used_this_month
            )

        entry = self.update(user_key, fn, _event)
        logger.info("Added %d credits for user %s", added[-1], user)
        return entry

    def set_tier(
        self,
        user_key: Optional[str],
        tier: Union[Tier, str],
        is_payment: bool = False
    ) -> CreditsState:
        """Switch a user's tier, starting a fresh period."""
        user = user_key or ANONYMOUS_USER
        entry = self.update(
            user_key,
            lambda current: ledger.change_tier(current, tier, is_payment, self.clock()),
            lambda before, after: UsageEvent(
                timestamp=self.clock(),
                user_key=user,
                kind=UsageKind.TIER_CHANGE,
                amount=0,
                model=model_for_tier(after.tier),
                used_after=0
            )
        )
        logger.info("Tier for user %s set to %s", user, entry.tier.value)
        return entry

    def fetch_usage_events(
        self,
        user_key: Optional[str] = None,
        kind: Optional[UsageKind] = None,
        limit: int = 100
    ) -> List[UsageEvent]:
        """Fetch recent usage events, newest first.

        Args:
            user_key: Optional filter for a specific user
            kind: Optional filter for a specific event kind
            limit: Maximum number of events to return
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT timestamp, user_key, kind, amount, feature, model,
                       input_tokens, output_tokens, used_after
                FROM usage_event
            """
            params: List[Any] = []
            conditions = []

            if user_key:
                conditions.append("user_key = ?")
                params.append(user_key)
            if kind:
                conditions.append("kind = ?")
                params.append(kind.value)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)

            events = []
            for row in conn.execute(query, params).fetchall():
                events.append(UsageEvent(
                    timestamp=datetime.fromisoformat(row[0]),
                    user_key=row[1],
                    kind=UsageKind(row[2]),
                    amount=row[3],
                    feature=row[4],
                    model=row[5],
                    input_tokens=row[6],
                    output_tokens=row[7],
                    used_after=row[8]
                ))
            return events
        finally:
            conn.close()


class DailyCounterRepository:
    """Per-user, per-day generation counters (free tier daily caps)."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def storage_key(user_key: Optional[str]) -> str:
        return f"{IDEA_COUNT_KEY_PREFIX}_{user_key or ANONYMOUS_USER}"

    def get(self, user_key: Optional[str], day: Optional[date] = None) -> int:
        counts = self.store.get_json(self.storage_key(user_key))
        if not isinstance(counts, dict):
            return 0
        return int(counts.get((day or date.today()).isoformat(), 0))

    def increment(self, user_key: Optional[str], day: Optional[date] = None) -> int:
        """Increment today's counter and return the new count.

        Only the current day is kept; older days are dropped on write.
        """
        day_key = (day or date.today()).isoformat()

        def _bump(counts: Any) -> Dict[str, int]:
            previous = counts.get(day_key, 0) if isinstance(counts, dict) else 0
            return {day_key: int(previous) + 1}

        return self.store.update_json(self.storage_key(user_key), _bump)[day_key]


class CacheRepository:
    """JSON cache for AI results (idea batches, deep analyses)."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get(self, key: str) -> Any:
        """Return the cached value, or None on a miss or corrupted entry."""
        return self.store.get_json(key)

    def put(self, key: str, value: Any) -> None:
        self.store.set_json(key, value)

    def invalidate(self, key: str) -> None:
        self.store.delete(key)


# Repository instances per database path
_repositories: Dict[str, LedgerRepository] = {}


def get_repository(db_path: str = DEFAULT_DB_PATH) -> LedgerRepository:
    """Get the shared LedgerRepository for a database path.

    Listeners registered on the returned instance see every write made
    through it.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of LedgerRepository
    """
    if db_path not in _repositories:
        _repositories[db_path] = LedgerRepository(db_path)
    return _repositories[db_path]
