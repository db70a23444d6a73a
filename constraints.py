"""Constraint engine: row rules, cross-table rules and delete planning.

Every check runs against a ``View`` so the same code validates a mutation
when it is staged and again when the transaction is replayed at commit.
"""

import logging
from decimal import Decimal

from errors import (
    ConsistencyViolation,
    DanglingReference,
    DomainRuleViolation,
    DuplicateKey,
    ReferentialViolation,
)
from schema import INCIDENT_STATUSES, RIDE_STATUSES, dependents, row_key

logger = logging.getLogger(__name__)

DRIVER_RATING_MIN = Decimal("0.00")
DRIVER_RATING_MAX = Decimal("5.00")
REVIEW_RATING_MIN = 1
REVIEW_RATING_MAX = 5

TERMINAL_RIDE_STATUSES = frozenset({"Completed", "Canceled"})
TERMINAL_INCIDENT_STATUSES = frozenset({"Resolved"})

# Only enforced when strict transitions are switched on
RIDE_TRANSITIONS = {
    "Requested": {"Driver_Assigned", "Canceled"},
    "Driver_Assigned": {"In_Progress", "Canceled"},
    "In_Progress": {"Payment_Pending", "Completed", "Canceled"},
    "Payment_Pending": {"Completed", "Canceled"},
    "Completed": set(),
    "Canceled": set(),
}


class ConstraintEngine:
    def __init__(self, strict_transitions=False, incident_consistency="warn"):
        if incident_consistency not in ("warn", "strict"):
            raise ValueError(f"incident_consistency must be 'warn' or 'strict', not {incident_consistency!r}")
        self.strict_transitions = strict_transitions
        self.incident_consistency = incident_consistency

    # ---------------- MUTATION CHECKS ----------------
    def check_insert(self, view, table, row):
        key = row_key(table, row)
        if view.get(table.name, key) is not None:
            raise DuplicateKey(
                "primary_key", "a row with this key already exists", table=table.name, value=key
            )
        self.check_row(table, row)
        self._check_unique(view, table, key, row, None)
        self._check_references(view, table, row, None)
        self._check_cross_table(view, table, key, row)

    def check_update(self, view, table, key, old, new):
        self.check_row(table, new)
        self._check_transition(table, key, old, new)
        self._check_unique(view, table, key, new, old)
        self._check_references(view, table, new, old)
        self._check_cross_table(view, table, key, new)

    def plan_delete(self, view, table, key, cascade=False):
        """Return the (table name, key) pairs to remove, children first.

        Raises ReferentialViolation when a dependent row would be orphaned.
        Cascade only follows ownership edges.
        """
        plan = []
        self._plan_delete(view, table, key, cascade, plan)
        return plan

    def _plan_delete(self, view, table, key, cascade, plan):
        if (table.name, key) in plan:
            return
        for child, fk in dependents(table.name):
            keys = view.referencing(child.name, fk.column, key)
            if not keys:
                continue
            if cascade and fk.owned:
                for child_key in keys:
                    self._plan_delete(view, child, child_key, cascade, plan)
            else:
                raise ReferentialViolation(
                    "restrict",
                    f"{len(keys)} row(s) in {child.name}.{fk.column} still reference it",
                    table=table.name,
                    value=key,
                )
        plan.append((table.name, key))

    # ---------------- SINGLE ROW RULES ----------------
    def check_row(self, table, row):
        name = table.name
        if name == "Drivers":
            rating = row.get("rating")
            if rating is not None and not DRIVER_RATING_MIN <= rating <= DRIVER_RATING_MAX:
                raise DomainRuleViolation(
                    "driver_rating_range", "rating must be between 0.00 and 5.00",
                    table=name, field="rating", value=rating,
                )
        elif name == "Reviews":
            rating = row["rating"]
            if not REVIEW_RATING_MIN <= rating <= REVIEW_RATING_MAX:
                raise DomainRuleViolation(
                    "review_rating_range", "rating must be between 1 and 5",
                    table=name, field="rating", value=rating,
                )
        elif name == "Rides":
            if row["status"] not in RIDE_STATUSES:
                raise DomainRuleViolation(
                    "ride_status", f"status must be one of {', '.join(RIDE_STATUSES)}",
                    table=name, field="status", value=row["status"],
                )
            self._check_order(name, "ride_time_order", row, "start_time", "end_time")
        elif name == "Licenses":
            self._check_order(name, "license_date_order", row, "issue_date", "expiry_date")
        elif name == "Incidents":
            if row["status"] not in INCIDENT_STATUSES:
                raise DomainRuleViolation(
                    "incident_status", f"status must be one of {', '.join(INCIDENT_STATUSES)}",
                    table=name, field="status", value=row["status"],
                )
        elif name == "Payments":
            self._check_non_negative(name, row, "amount")
        elif name == "Earnings":
            self._check_non_negative(name, row, "commission_amount")
            self._check_non_negative(name, row, "driver_earnings")

    def _check_order(self, table_name, rule, row, first, second):
        try:
            ordered = row[second] > row[first]
        except TypeError:
            raise DomainRuleViolation(
                "column_type", f"{first} and {second} are not comparable",
                table=table_name, field=second, value=row[second],
            ) from None
        if not ordered:
            raise DomainRuleViolation(
                rule, f"{second} must be after {first}",
                table=table_name, field=second, value=row[second],
            )

    def _check_non_negative(self, table_name, row, column):
        if row[column] < 0:
            raise DomainRuleViolation(
                "non_negative_amount", "amount cannot be negative",
                table=table_name, field=column, value=row[column],
            )

    def _check_transition(self, table, key, old, new):
        if table.name == "Rides":
            before, after = old["status"], new["status"]
            if before == after:
                return
            if before in TERMINAL_RIDE_STATUSES:
                raise DomainRuleViolation(
                    "terminal_status", f"ride {key} is {before} and cannot change status",
                    table=table.name, field="status", value=after,
                )
            if self.strict_transitions and after not in RIDE_TRANSITIONS[before]:
                raise DomainRuleViolation(
                    "ride_transition", f"cannot move from {before} to {after}",
                    table=table.name, field="status", value=after,
                )
        elif table.name == "Incidents":
            before, after = old["status"], new["status"]
            if before != after and before in TERMINAL_INCIDENT_STATUSES:
                raise DomainRuleViolation(
                    "terminal_status", f"incident {key} is {before} and cannot change status",
                    table=table.name, field="status", value=after,
                )

    # ---------------- CROSS ROW RULES ----------------
    def _check_unique(self, view, table, key, row, old):
        for column in table.unique:
            value = row.get(column)
            if value is None or (old is not None and old.get(column) == value):
                continue
            owner = view.unique_owner(table.name, column, value)
            if owner is not None and owner != key:
                raise DuplicateKey(
                    "unique", f"value already used by row {owner}",
                    table=table.name, field=column, value=value,
                )

    def _check_references(self, view, table, row, old):
        for fk in table.foreign_keys:
            value = row.get(fk.column)
            if value is None or (old is not None and old.get(fk.column) == value):
                continue
            if not view.exists(fk.references, value):
                raise DanglingReference(
                    "foreign_key", f"no {fk.references} row with id {value}",
                    table=table.name, field=fk.column, value=value,
                )

    def _check_cross_table(self, view, table, key, row):
        if table.name == "Earnings":
            payment = view.get("Payments", row["payment_id"])
            others = [
                view.lookup("Earnings", k)
                for k in view.referencing("Earnings", "payment_id", row["payment_id"])
                if k != key
            ]
            self._check_earnings_total(payment, others + [row])
        elif table.name == "Payments":
            earnings = [
                view.lookup("Earnings", k)
                for k in view.referencing("Earnings", "payment_id", key)
            ]
            self._check_earnings_total(row, earnings)

    def _check_earnings_total(self, payment, earnings):
        total = sum(
            (e["commission_amount"] + e["driver_earnings"] for e in earnings if e is not None),
            Decimal("0.00"),
        )
        if total > payment["amount"]:
            raise DomainRuleViolation(
                "earning_within_payment",
                f"earnings total {total} exceeds payment amount {payment['amount']}",
                table="Earnings", field="payment_id", value=payment["id"],
            )

    # ---------------- CONSISTENCY ----------------
    def check_consistency(self, view, changes):
        """Return ConsistencyViolations for incidents touched by ``changes``.

        Incidents are re-checked when they change, when their ride changes
        driver and when a passenger is removed from their ride.
        """
        incident_keys = set()
        for table_name, key, row in changes:
            if table_name == "Incidents" and row is not None:
                incident_keys.add(key)
            elif table_name == "Rides" and row is not None:
                incident_keys.update(view.referencing("Incidents", "ride_id", key))
            elif table_name == "Ride_Passengers" and row is None:
                incident_keys.update(view.referencing("Incidents", "ride_id", key[0]))

        violations = []
        for key in sorted(incident_keys):
            incident = view.lookup("Incidents", key)
            if incident is None:
                continue
            violations.extend(self._incident_violations(view, key, incident))
        return violations

    def _incident_violations(self, view, key, incident):
        ride_id = incident["ride_id"]
        ride = view.lookup("Rides", ride_id)
        if ride is None:
            return []
        found = []
        if ride["driver_id"] != incident["driver_id"]:
            found.append(ConsistencyViolation(
                "incident_consistency",
                f"incident {key} names driver {incident['driver_id']} but ride {ride_id} "
                f"was driven by {ride['driver_id']}",
                table="Incidents", field="driver_id", value=incident["driver_id"],
            ))
        if view.lookup("Ride_Passengers", (ride_id, incident["passenger_id"])) is None:
            found.append(ConsistencyViolation(
                "incident_consistency",
                f"incident {key} names passenger {incident['passenger_id']} "
                f"who was not on ride {ride_id}",
                table="Incidents", field="passenger_id", value=incident["passenger_id"],
            ))
        return found
