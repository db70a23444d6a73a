"""Durable commit log and periodic snapshots.

Every commit is appended to ``commit_log`` before it becomes visible.
Snapshots of the materialized tables go to ``store_snapshots``; recovery loads
the newest snapshot and replays the log entries written after it.
"""

import json
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from app import db
from models import CommitLogEntry, StoreSnapshot
from schema import decode_key, decode_row, encode_key, encode_row, get_table

logger = logging.getLogger(__name__)


def encode_changes(changes):
    return json.dumps([
        {
            "table": table_name,
            "key": encode_key(key),
            "row": encode_row(row) if row is not None else None,
        }
        for table_name, key, row in changes
    ])


def decode_changes(text):
    changes = []
    for item in json.loads(text):
        table = get_table(item["table"])
        row = decode_row(table, item["row"]) if item["row"] is not None else None
        changes.append((table.name, decode_key(table, item["key"]), row))
    return changes


class Journal:
    def __init__(self, app):
        self.app = app

    def append(self, sequence, tx_id, changes):
        """Write one commit to the log. Raises if the database rejects it."""
        with self.app.app_context():
            try:
                db.session.add(CommitLogEntry(
                    sequence=sequence,
                    tx_id=tx_id,
                    committed_at=datetime.utcnow(),
                    changes=encode_changes(changes),
                ))
                db.session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to journal commit {sequence} ({tx_id}): {str(e)}")
                db.session.rollback()
                raise
            finally:
                db.session.close()

    def write_snapshot(self, state):
        """Persist a snapshot of ``state`` and prune the log entries it covers."""
        payload = {}
        row_count = 0
        for name, table_state in state.tables.items():
            payload[name] = [encode_row(table_state.rows[key]) for key in sorted(table_state.rows)]
            row_count += len(payload[name])

        with self.app.app_context():
            try:
                latest = db.session.query(db.func.max(StoreSnapshot.sequence)).scalar()
                if latest is not None and latest >= state.sequence:
                    logger.info(f"Snapshot at sequence {state.sequence} already taken, skipping")
                    return latest
                db.session.add(StoreSnapshot(
                    sequence=state.sequence,
                    taken_at=datetime.utcnow(),
                    row_count=row_count,
                    payload=json.dumps(payload),
                ))
                pruned = CommitLogEntry.query.filter(
                    CommitLogEntry.sequence <= state.sequence
                ).delete(synchronize_session=False)
                StoreSnapshot.query.filter(
                    StoreSnapshot.sequence < state.sequence
                ).delete(synchronize_session=False)
                db.session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to write snapshot at sequence {state.sequence}: {str(e)}")
                db.session.rollback()
                raise
            finally:
                db.session.close()

        logger.info(f"Snapshot written at sequence {state.sequence}: {row_count} rows, {pruned} log entries pruned")
        return state.sequence

    def load_snapshot(self):
        """Return (rows by table, sequence) of the newest snapshot, or empty state."""
        with self.app.app_context():
            snapshot = StoreSnapshot.query.order_by(StoreSnapshot.sequence.desc()).first()
            if snapshot is None:
                return {}, 0
            payload = json.loads(snapshot.payload)
            sequence = snapshot.sequence
            db.session.close()

        rows_by_table = {
            name: [decode_row(get_table(name), row) for row in rows]
            for name, rows in payload.items()
        }
        return rows_by_table, sequence

    def entries_after(self, sequence):
        """Yield (sequence, changes) for log entries after ``sequence`` in order."""
        with self.app.app_context():
            entries = CommitLogEntry.query.filter(
                CommitLogEntry.sequence > sequence
            ).order_by(CommitLogEntry.sequence).all()
            loaded = [(entry.sequence, entry.changes) for entry in entries]
            db.session.close()

        for entry_sequence, text in loaded:
            yield entry_sequence, decode_changes(text)

    def log_length(self):
        with self.app.app_context():
            return CommitLogEntry.query.count()


def take_snapshot(coordinator):
    """Background job: snapshot the store, keeping the scheduler alive on failure."""
    try:
        coordinator.snapshot()
    except SQLAlchemyError as e:
        logger.error(f"Error in scheduled snapshot: {str(e)}")
