"""Error taxonomy for the ride ledger store."""


class StoreError(Exception):
    """Base class for every error raised by the store."""

    def to_dict(self):
        return {"error": type(self).__name__, "message": str(self)}


class UnknownTable(StoreError):
    """Raised when a table name is not part of the schema."""

    def __init__(self, table):
        super().__init__(f"Unknown table {table!r}")
        self.table = table


class TransactionClosed(StoreError):
    """Raised when a committed or aborted transaction is used again."""
    pass


class ConcurrentModification(StoreError):
    """Raised at commit time when a concurrently committed transaction
    touched a key this transaction read, wrote or claimed.

    Callers should retry the whole transaction, not a partial patch.
    """

    def __init__(self, keys):
        self.keys = sorted(keys, key=repr)
        shown = ", ".join(_describe_watch_key(k) for k in self.keys[:5])
        super().__init__(f"Concurrent modification of {shown}")

    def to_dict(self):
        data = super().to_dict()
        data["keys"] = [_describe_watch_key(k) for k in self.keys]
        return data


class ValidationFailed(StoreError):
    """A rule rejected a mutation.

    Carries the rule identifier plus the table, field and offending value so
    callers can decide whether to retry or fail the end-user request.
    """

    def __init__(self, rule, details="", table=None, field=None, value=None):
        self.rule = rule
        self.details = details
        self.table = table
        self.field = field
        self.value = value
        where = table or ""
        if field:
            where = f"{where}.{field}" if where else field
        message = f"[{rule}]"
        if where:
            message += f" {where}"
        if details:
            message += f": {details}"
        super().__init__(message)

    def to_dict(self):
        data = super().to_dict()
        data.update({
            "rule": self.rule,
            "details": self.details,
            "table": self.table,
            "field": self.field,
            "value": None if self.value is None else str(self.value),
        })
        return data


class DuplicateKey(ValidationFailed):
    """Primary key or unique column already taken."""
    pass


class DanglingReference(ValidationFailed):
    """Foreign key value does not resolve to an existing row."""
    pass


class ReferentialViolation(ValidationFailed):
    """Delete blocked by dependent rows."""
    pass


class DomainRuleViolation(ValidationFailed):
    """Rating, status, time-ordering or column rule broken."""
    pass


class ConsistencyViolation(ValidationFailed):
    """Cross-entity semantic mismatch, e.g. an incident naming a driver who
    did not drive the referenced ride."""
    pass


def _describe_watch_key(key):
    kind, table, *rest = key
    return f"{kind}:{table}:" + ":".join(str(part) for part in rest)
