from datetime import datetime
from app import db


class CommitLogEntry(db.Model):
    """One committed transaction: after-images of every row it changed."""
    __tablename__ = 'commit_log'
    sequence = db.Column(db.Integer, primary_key=True, autoincrement=False)
    tx_id = db.Column(db.String(32), nullable=False)
    committed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    changes = db.Column(db.Text, nullable=False)  # JSON list of {table, key, row}


class StoreSnapshot(db.Model):
    """Materialized tables as of a commit sequence."""
    __tablename__ = 'store_snapshots'
    id = db.Column(db.Integer, primary_key=True)
    sequence = db.Column(db.Integer, nullable=False, index=True)
    taken_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    row_count = db.Column(db.Integer, default=0)
    payload = db.Column(db.Text, nullable=False)  # JSON {table: [row, ...]}
