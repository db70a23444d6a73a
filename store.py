"""In-memory entity store.

Committed state is held in an immutable ``StoreState``. Commits build new
``TableState`` objects copy-on-write and swap the state reference, so a reader
that grabbed a snapshot keeps seeing it unchanged and never waits on a writer.

Only the coordinator holding the store's ``WriteGrant`` can publish changes.
"""

import logging
import threading
from collections import namedtuple

from errors import DomainRuleViolation, StoreError
from schema import TABLES, encode_key, encode_row, get_table, normalize_key, row_key

logger = logging.getLogger(__name__)

StoreState = namedtuple("StoreState", ["sequence", "tables"])


class TableState:
    """Rows of one table plus its foreign key and unique indexes."""

    def __init__(self, table, rows=None, fk_index=None, unique_index=None):
        self.table = table
        self.rows = rows if rows is not None else {}
        # column -> value -> frozenset of row keys
        self.fk_index = fk_index if fk_index is not None else {
            fk.column: {} for fk in table.foreign_keys
        }
        # column -> value -> row key
        self.unique_index = unique_index if unique_index is not None else {
            column: {} for column in table.unique
        }

    def copy(self):
        return TableState(
            self.table,
            dict(self.rows),
            {column: dict(index) for column, index in self.fk_index.items()},
            {column: dict(index) for column, index in self.unique_index.items()},
        )

    def _write(self, key, row):
        """Replace the row at ``key`` (``None`` deletes it) on a private copy.

        Returns the watch keys whose version must move.
        """
        name = self.table.name
        old = self.rows.get(key)
        touched = {("row", name, key)}
        if (old is None) != (row is None):
            touched.add(("exists", name, key))

        for column, index in self.fk_index.items():
            old_value = old.get(column) if old else None
            new_value = row.get(column) if row else None
            if old is not None and row is not None and old_value == new_value:
                continue
            if old_value is not None:
                index[old_value] = index.get(old_value, frozenset()) - {key}
                if not index[old_value]:
                    del index[old_value]
                touched.add(("ref", name, column, old_value))
            if new_value is not None:
                index[new_value] = index.get(new_value, frozenset()) | {key}
                touched.add(("ref", name, column, new_value))

        for column, index in self.unique_index.items():
            old_value = old.get(column) if old else None
            new_value = row.get(column) if row else None
            if old is not None and row is not None and old_value == new_value:
                continue
            if old_value is not None and index.get(old_value) == key:
                del index[old_value]
                touched.add(("unique", name, column, old_value))
            if new_value is not None:
                index[new_value] = key
                touched.add(("unique", name, column, new_value))

        if row is None:
            self.rows.pop(key, None)
        else:
            self.rows[key] = row
        return touched


class WriteGrant:
    """Capability that allows publishing into one store."""
    __slots__ = ()


class ForeignKeyQuery:
    """Rows of ``table`` whose ``column`` equals ``value`` in one snapshot.

    Iterating again restarts from the first row; the result set is fixed at
    construction time.
    """

    def __init__(self, table_state, column, value):
        self._rows = table_state.rows
        self._keys = sorted(table_state.fk_index[column].get(value, ()))
        self.table = table_state.table.name
        self.column = column
        self.value = value

    def __iter__(self):
        for key in self._keys:
            yield dict(self._rows[key])

    def __len__(self):
        return len(self._keys)

    def __repr__(self):
        return f"<ForeignKeyQuery {self.table}.{self.column}={self.value!r} ({len(self)} rows)>"


class EntityStore:
    def __init__(self):
        self._state = StoreState(0, {name: TableState(t) for name, t in TABLES.items()})
        self._versions = {}
        self._next_ids = {}
        self._id_lock = threading.Lock()
        self._grant = None
        self.commit_lock = threading.Lock()

    # ---------------- ACCESS CONTROL ----------------
    def grant_write_access(self):
        """Hand out the single write grant for this store."""
        if self._grant is not None:
            raise StoreError("Store is already bound to a coordinator")
        self._grant = WriteGrant()
        return self._grant

    def _check_grant(self, grant):
        if grant is None or grant is not self._grant:
            raise StoreError("Direct mutation of the store is not allowed; use a transaction")

    # ---------------- READS ----------------
    def snapshot(self):
        return self._state

    @property
    def sequence(self):
        return self._state.sequence

    def get(self, table_name, key):
        """Return a copy of the last committed row, or None."""
        table = get_table(table_name)
        row = self._state.tables[table_name].rows.get(normalize_key(table, key))
        return dict(row) if row is not None else None

    def query_by_foreign_key(self, table_name, column, value):
        table = get_table(table_name)
        fk = table.foreign_key(column)
        if fk is None:
            raise DomainRuleViolation(
                "not_a_foreign_key", "column is not a foreign key", table=table_name, field=column
            )
        value = normalize_key(get_table(fk.references), value)
        return ForeignKeyQuery(self._state.tables[table_name], column, value)

    def count(self, table_name):
        get_table(table_name)
        return len(self._state.tables[table_name].rows)

    def dump(self):
        """Plain rendition of every committed row, ordered by key."""
        state = self._state
        return {
            name: [
                {"key": encode_key(key), "row": encode_row(table_state.rows[key])}
                for key in sorted(table_state.rows)
            ]
            for name, table_state in state.tables.items()
        }

    def changed_since(self, watch_keys, sequence):
        """Watch keys bumped by a commit after ``sequence``."""
        return [k for k in watch_keys if self._versions.get(k, 0) > sequence]

    @property
    def tracked_versions(self):
        return len(self._versions)

    # ---------------- ID ALLOCATION ----------------
    def allocate_id(self, table_name):
        """Hand out an id for ``table_name`` that no other caller has received.

        Ids only move forward, past every id published or loaded so far.
        """
        table = get_table(table_name)
        if table.composite_key:
            raise DomainRuleViolation(
                "primary_key_shape", "composite keys are not generated", table=table_name
            )
        with self._id_lock:
            key = self._next_ids.get(table_name, 1)
            self._next_ids[table_name] = key + 1
        return key

    def _reserve_id(self, table_name, key):
        if isinstance(key, int):
            with self._id_lock:
                if key >= self._next_ids.get(table_name, 1):
                    self._next_ids[table_name] = key + 1

    # ---------------- WRITES (grant holders only) ----------------
    def publish(self, grant, changes):
        """Apply ``(table, key, row_or_None)`` after-images as one commit.

        Must be called with ``commit_lock`` held. Returns the new sequence.
        """
        self._check_grant(grant)
        state = self._state
        sequence = state.sequence + 1
        tables = dict(state.tables)
        copies = {}
        bumped = set()
        for table_name, key, row in changes:
            table_state = copies.get(table_name)
            if table_state is None:
                table_state = copies[table_name] = tables[table_name].copy()
            bumped |= table_state._write(key, dict(row) if row is not None else None)
            if row is not None:
                self._reserve_id(table_name, key)
        tables.update(copies)
        for watch_key in bumped:
            self._versions[watch_key] = sequence
        self._state = StoreState(sequence, tables)
        logger.debug(f"Published commit {sequence}: {len(changes)} row changes in {sorted(copies)}")
        return sequence

    def load(self, grant, rows_by_table, sequence):
        """Replace the whole state, used by recovery from a snapshot."""
        self._check_grant(grant)
        tables = {}
        for name, table in TABLES.items():
            table_state = TableState(table)
            for row in rows_by_table.get(name, ()):
                table_state._write(row_key(table, row), dict(row))
            tables[name] = table_state
        self._versions.clear()
        with self._id_lock:
            self._next_ids.clear()
        for name, table_state in tables.items():
            for key in table_state.rows:
                self._reserve_id(name, key)
        self._state = StoreState(sequence, tables)
        logger.info(f"Store loaded at sequence {sequence}")

    def prune_versions(self, horizon):
        """Forget watch key versions at or below ``horizon``.

        ``horizon`` is the oldest begin sequence among open transactions, so
        no conflict check can need the dropped entries. Must be called with
        ``commit_lock`` held.
        """
        stale = [k for k, version in self._versions.items() if version <= horizon]
        for watch_key in stale:
            del self._versions[watch_key]
        return len(stale)


class View:
    """A committed snapshot overlaid with staged, uncommitted rows.

    Every lookup records a watch key so the coordinator can detect, at
    commit time, whether a concurrent commit changed what was read.
    """

    def __init__(self, state):
        self.state = state
        self.staged = {}
        self.watched = set()

    @property
    def sequence(self):
        return self.state.sequence

    def _lookup(self, table_name, key):
        if (table_name, key) in self.staged:
            return self.staged[(table_name, key)]
        return self.state.tables[table_name].rows.get(key)

    def get(self, table_name, key):
        self.watched.add(("row", table_name, key))
        return self._lookup(table_name, key)

    def exists(self, table_name, key):
        self.watched.add(("exists", table_name, key))
        return self._lookup(table_name, key) is not None

    def lookup(self, table_name, key):
        """Read without recording a watch key, for staged-only bookkeeping."""
        return self._lookup(table_name, key)

    def unique_owner(self, table_name, column, value):
        """Key of the row holding ``value`` in a unique column, or None."""
        self.watched.add(("unique", table_name, column, value))
        for (name, key), row in self.staged.items():
            if name == table_name and row is not None and row.get(column) == value:
                return key
        owner = self.state.tables[table_name].unique_index[column].get(value)
        if owner is not None and (table_name, owner) not in self.staged:
            return owner
        return None

    def referencing(self, table_name, column, value):
        """Keys of rows in ``table_name`` whose ``column`` equals ``value``."""
        self.watched.add(("ref", table_name, column, value))
        keys = [
            key
            for key in self.state.tables[table_name].fk_index[column].get(value, ())
            if (table_name, key) not in self.staged
        ]
        for (name, key), row in self.staged.items():
            if name == table_name and row is not None and row.get(column) == value:
                keys.append(key)
        return sorted(keys)

    def put(self, table_name, key, row):
        self.staged[(table_name, key)] = row
        self.watched.add(("row", table_name, key))

    def remove(self, table_name, key):
        self.put(table_name, key, None)

    def changes(self):
        """Staged after-images in staging order, skipping no-op insert+delete pairs."""
        return [
            (name, key, row)
            for (name, key), row in self.staged.items()
            if row is not None or key in self.state.tables[name].rows
        ]
