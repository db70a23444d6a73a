"""Transaction coordinator.

Transactions stage mutations against a private ``View`` of the snapshot they
began on. Nothing is visible to other readers until ``commit``, which, under
the store's commit lock:

  1. fails with ConcurrentModification if a later commit touched any key the
     transaction read, wrote or claimed,
  2. replays every staged mutation against the latest committed state
     through the constraint engine,
  3. appends the changes to the journal (when one is configured),
  4. publishes them to the store in one step.

Any failure leaves the committed state as it was. Nothing is retried here.
"""

import logging
import threading
import uuid
from collections import Counter, namedtuple

from constraints import ConstraintEngine
from errors import (
    ConcurrentModification,
    DanglingReference,
    DomainRuleViolation,
    StoreError,
    TransactionClosed,
)
from schema import coerce_row, get_table, normalize_key, row_key
from store import View

logger = logging.getLogger(__name__)

Insert = namedtuple("Insert", ["table", "record"])
Update = namedtuple("Update", ["table", "key", "patch"])
Delete = namedtuple("Delete", ["table", "key", "cascade"])
Delete.__new__.__defaults__ = (False,)

CommitResult = namedtuple("CommitResult", ["tx_id", "sequence", "warnings"])

ACTIVE = "active"
COMMITTED = "committed"
ABORTED = "aborted"


class Transaction:
    """Handle for one unit of work. Owned by a single caller."""

    def __init__(self, coordinator, view):
        self.id = uuid.uuid4().hex[:12]
        self.coordinator = coordinator
        self.view = view
        self.mutations = []
        self.status = ACTIVE
        self.error = None
        self._lock = threading.Lock()
        # counted among the open transactions that hold back version pruning
        self._open = False

    @property
    def begin_sequence(self):
        return self.view.sequence

    @property
    def active(self):
        return self.status == ACTIVE

    def get(self, table_name, key):
        """Read through this transaction's own staged writes."""
        table = get_table(table_name)
        row = self.view.lookup(table_name, normalize_key(table, key))
        return dict(row) if row is not None else None

    def insert(self, table_name, record):
        return self.coordinator.insert(self, table_name, record)

    def update(self, table_name, key, patch):
        return self.coordinator.update(self, table_name, key, patch)

    def delete(self, table_name, key, cascade=False):
        return self.coordinator.delete(self, table_name, key, cascade)

    def commit(self):
        return self.coordinator.commit(self)

    def abort(self):
        self.coordinator.abort(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.coordinator.abort(self)
        elif self.active:
            self.coordinator.commit(self)
        return False

    def __repr__(self):
        return f"<Transaction {self.id} {self.status} at seq {self.begin_sequence}, {len(self.mutations)} mutations>"


class TransactionCoordinator:
    def __init__(self, store, engine=None, journal=None):
        self.store = store
        self.engine = engine or ConstraintEngine()
        self.journal = journal
        self._grant = store.grant_write_access()
        self._stats = Counter()
        self._stats_lock = threading.Lock()
        # begin sequence -> number of open transactions that started there
        self._open = Counter()
        self._open_lock = threading.Lock()

    # ---------------- TRANSACTION API ----------------
    def begin_transaction(self):
        with self._open_lock:
            tx = Transaction(self, View(self.store.snapshot()))
            self._open[tx.begin_sequence] += 1
            tx._open = True
        self._count("begun")
        logger.debug(f"Transaction {tx.id} began at sequence {tx.begin_sequence}")
        return tx

    def apply(self, tx, mutation):
        """Stage one mutation. A rejected mutation aborts the transaction."""
        with tx._lock:
            self._ensure_active(tx)
            try:
                result, resolved = self._stage(tx.view, mutation)
            except StoreError as e:
                self._fail(tx, e)
                raise
            tx.mutations.append(resolved)
            return result

    def insert(self, tx, table_name, record):
        """Stage an insert and return the new row's key."""
        return self.apply(tx, Insert(table_name, record))

    def update(self, tx, table_name, key, patch):
        self.apply(tx, Update(table_name, key, patch))

    def delete(self, tx, table_name, key, cascade=False):
        """Stage a delete; returns the (table, key) pairs removed."""
        return self.apply(tx, Delete(table_name, key, cascade))

    def commit(self, tx):
        with tx._lock:
            self._ensure_active(tx)
            try:
                with self.store.commit_lock:
                    sequence, warnings = self._commit_locked(tx)
                    self._release(tx)
                    self._prune_versions()
            except StoreError as e:
                self._fail(tx, e)
                raise
            except Exception as e:
                # journal or other infrastructure failure
                self._fail(tx, e)
                logger.error(f"Transaction {tx.id} failed to commit: {str(e)}")
                raise
            tx.status = COMMITTED

        self._count("committed")
        for warning in warnings:
            self._count("consistency_warnings")
            logger.warning(f"Transaction {tx.id} committed with consistency warning: {warning}")
        logger.info(f"Transaction {tx.id} committed at sequence {sequence} ({len(tx.mutations)} mutations)")
        return CommitResult(tx.id, sequence, warnings)

    def abort(self, tx):
        """Discard a transaction. Safe to call more than once."""
        with tx._lock:
            if not tx.active:
                return
            tx.status = ABORTED
            tx.view.staged.clear()
        self._release(tx)
        self._count("aborted")
        logger.info(f"Transaction {tx.id} aborted by caller ({len(tx.mutations)} staged mutations discarded)")

    # ---------------- READS (last committed state) ----------------
    def get(self, table_name, key):
        return self.store.get(table_name, key)

    def query_by_foreign_key(self, table_name, column, value):
        return self.store.query_by_foreign_key(table_name, column, value)

    # ---------------- DURABILITY ----------------
    def recover(self):
        """Rebuild the store from the journal's latest snapshot and log."""
        if self.journal is None:
            return self.store.sequence
        rows_by_table, sequence = self.journal.load_snapshot()
        replayed = 0
        with self.store.commit_lock:
            self.store.load(self._grant, rows_by_table, sequence)
            for entry_sequence, changes in self.journal.entries_after(sequence):
                if entry_sequence != self.store.sequence + 1:
                    raise StoreError(
                        f"Journal gap: expected sequence {self.store.sequence + 1}, found {entry_sequence}"
                    )
                self.store.publish(self._grant, changes)
                replayed += 1
            self._prune_versions()
        logger.info(f"Recovered store at sequence {self.store.sequence} (snapshot {sequence}, {replayed} log entries replayed)")
        return self.store.sequence

    def snapshot(self):
        """Write the committed state to the journal as a snapshot."""
        if self.journal is None:
            return None
        return self.journal.write_snapshot(self.store.snapshot())

    def stats(self):
        with self._stats_lock:
            data = dict(self._stats)
        data["sequence"] = self.store.sequence
        return data

    # ---------------- INTERNALS ----------------
    def _commit_locked(self, tx):
        conflicts = self.store.changed_since(tx.view.watched, tx.begin_sequence)
        if conflicts:
            raise ConcurrentModification(conflicts)

        replay = View(self.store.snapshot())
        for mutation in tx.mutations:
            self._stage(replay, mutation)
        changes = replay.changes()

        warnings = self.engine.check_consistency(replay, changes)
        if warnings and self.engine.incident_consistency == "strict":
            raise warnings[0]

        if not changes:
            return self.store.sequence, warnings
        if self.journal is not None:
            self.journal.append(self.store.sequence + 1, tx.id, changes)
        return self.store.publish(self._grant, changes), warnings

    def _stage(self, view, mutation):
        """Validate and stage a mutation on ``view``.

        Returns the caller-facing result and the mutation with generated
        values filled in, so a replay stages exactly the same rows.
        """
        table = get_table(mutation.table)

        if isinstance(mutation, Insert):
            values = dict(mutation.record)
            if not table.composite_key and values.get("id") is None:
                values["id"] = self._generate_id(view, table.name)
            row = coerce_row(table, values)
            self.engine.check_insert(view, table, row)
            key = row_key(table, row)
            view.put(table.name, key, row)
            return key, Insert(mutation.table, row)

        if isinstance(mutation, Update):
            key = normalize_key(table, mutation.key)
            old = view.get(table.name, key)
            if old is None:
                raise DanglingReference(
                    "row_not_found", "cannot update a missing row", table=table.name, value=key
                )
            merged = dict(old)
            merged.update(mutation.patch)
            new = coerce_row(table, merged)
            patch = {name: new[name] for name in mutation.patch}
            for column in table.primary_key:
                if column in patch and patch[column] != old[column]:
                    raise DomainRuleViolation(
                        "primary_key_immutable", "key columns cannot be updated",
                        table=table.name, field=column, value=patch[column],
                    )
            self.engine.check_update(view, table, key, old, new)
            view.put(table.name, key, new)
            return None, Update(mutation.table, key, patch)

        if isinstance(mutation, Delete):
            key = normalize_key(table, mutation.key)
            if view.get(table.name, key) is None:
                raise DanglingReference(
                    "row_not_found", "cannot delete a missing row", table=table.name, value=key
                )
            plan = self.engine.plan_delete(view, table, key, mutation.cascade)
            for table_name, doomed in plan:
                view.remove(table_name, doomed)
            return plan, Delete(mutation.table, key, mutation.cascade)

        raise TypeError(f"Unsupported mutation {mutation!r}")

    def _generate_id(self, view, table_name):
        key = self.store.allocate_id(table_name)
        # skip ids this transaction already staged explicitly
        while view.lookup(table_name, key) is not None:
            key = self.store.allocate_id(table_name)
        return key

    def _release(self, tx):
        with self._open_lock:
            if not tx._open:
                return
            tx._open = False
            self._open[tx.begin_sequence] -= 1
            if self._open[tx.begin_sequence] <= 0:
                del self._open[tx.begin_sequence]

    def _prune_versions(self):
        """Drop version history older than every open transaction. Needs commit_lock."""
        with self._open_lock:
            horizon = min(self._open) if self._open else self.store.sequence
            self.store.prune_versions(horizon)

    def _ensure_active(self, tx):
        if tx.coordinator is not self:
            raise TransactionClosed(f"Transaction {tx.id} belongs to another coordinator")
        if not tx.active:
            raise TransactionClosed(f"Transaction {tx.id} is already {tx.status}")

    def _fail(self, tx, error):
        tx.status = ABORTED
        tx.error = error
        tx.view.staged.clear()
        self._release(tx)
        self._count("aborted")
        if isinstance(error, ConcurrentModification):
            self._count("conflicts")
        elif isinstance(error, StoreError):
            self._count("validation_failures")
        logger.info(f"Transaction {tx.id} aborted: {error}")

    def _count(self, name):
        with self._stats_lock:
            self._stats[name] += 1
