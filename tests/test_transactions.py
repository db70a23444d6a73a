import threading
from decimal import Decimal

import pytest

from conftest import make_passenger, make_ride, make_vehicle
from errors import (
    ConcurrentModification,
    DanglingReference,
    DomainRuleViolation,
    DuplicateKey,
    ReferentialViolation,
    TransactionClosed,
    UnknownTable,
)
from store import EntityStore
from transactions import Insert, TransactionCoordinator


def test_completed_ride_end_to_end(coordinator):
    tx = coordinator.begin_transaction()
    coordinator.insert(tx, "Drivers", {"id": 1, "first_name": "James", "last_name": "Smith", "rating": 4.75})
    coordinator.insert(tx, "Rides", make_ride(1, 1, status="Completed", end="2023-01-01T08:30"))
    coordinator.insert(tx, "Payments", {"id": 1, "ride_id": 1, "amount": "25.50", "status": "Paid"})
    coordinator.insert(tx, "Earnings", {
        "id": 1, "payment_id": 1, "commission_amount": "5.10", "driver_earnings": "20.40",
    })
    result = coordinator.commit(tx)

    assert result.tx_id == tx.id
    assert result.sequence == 1
    assert result.warnings == []
    assert coordinator.get("Drivers", 1)["rating"] == Decimal("4.75")
    assert coordinator.get("Earnings", 1)["driver_earnings"] == Decimal("20.40")
    assert [p["id"] for p in coordinator.query_by_foreign_key("Payments", "ride_id", 1)] == [1]


def test_staged_rows_are_invisible_until_commit(ride_world):
    tx = ride_world.begin_transaction()
    ride_world.insert(tx, "Drivers", {"id": 3, "first_name": "Robert"})
    assert tx.get("Drivers", 3)["first_name"] == "Robert"
    assert ride_world.get("Drivers", 3) is None
    ride_world.commit(tx)
    assert ride_world.get("Drivers", 3)["first_name"] == "Robert"


def test_abort_leaves_store_unchanged(ride_world):
    before = ride_world.store.dump()
    sequence = ride_world.store.sequence

    tx = ride_world.begin_transaction()
    ride_world.update(tx, "Drivers", 1, {"first_name": "Jim"})
    ride_world.insert(tx, "Passengers", make_passenger(None, "+1-555-0500"))
    ride_world.delete(tx, "Rides", 1, cascade=True)
    ride_world.abort(tx)
    ride_world.abort(tx)

    assert ride_world.store.dump() == before
    assert ride_world.store.sequence == sequence
    with pytest.raises(TransactionClosed):
        ride_world.commit(tx)


def test_rejected_mutation_aborts_transaction(ride_world):
    before = ride_world.store.dump()
    tx = ride_world.begin_transaction()
    ride_world.insert(tx, "Drivers", {"id": 3})
    with pytest.raises(DanglingReference):
        ride_world.insert(tx, "Rides", make_ride(2, 42))

    assert tx.status == "aborted"
    assert isinstance(tx.error, DanglingReference)
    with pytest.raises(TransactionClosed):
        ride_world.insert(tx, "Drivers", {"id": 4})
    assert ride_world.store.dump() == before


def test_unknown_table_aborts_transaction(coordinator):
    tx = coordinator.begin_transaction()
    with pytest.raises(UnknownTable):
        coordinator.insert(tx, "Scooters", {"id": 1})
    assert not tx.active


def test_update_and_delete_of_missing_rows(ride_world):
    tx = ride_world.begin_transaction()
    with pytest.raises(DanglingReference) as excinfo:
        ride_world.update(tx, "Drivers", 99, {"first_name": "Nobody"})
    assert excinfo.value.rule == "row_not_found"

    tx = ride_world.begin_transaction()
    with pytest.raises(DanglingReference):
        ride_world.delete(tx, "Drivers", 99)


def test_commit_twice_is_rejected(ride_world):
    tx = ride_world.begin_transaction()
    ride_world.update(tx, "Drivers", 2, {"rating": "4.10"})
    ride_world.commit(tx)
    with pytest.raises(TransactionClosed):
        ride_world.commit(tx)
    with pytest.raises(TransactionClosed):
        ride_world.update(tx, "Drivers", 2, {"rating": "4.20"})


def test_transaction_from_another_coordinator(ride_world):
    other = TransactionCoordinator(EntityStore())
    tx = other.begin_transaction()
    with pytest.raises(TransactionClosed):
        ride_world.insert(tx, "Drivers", {"id": 9})


def test_empty_commit_does_not_advance_sequence(ride_world):
    sequence = ride_world.store.sequence
    result = ride_world.begin_transaction().commit()
    assert result.sequence == sequence
    assert ride_world.store.sequence == sequence


def test_context_manager_commits_and_aborts(ride_world):
    with ride_world.begin_transaction() as tx:
        tx.insert("Drivers", {"id": 3, "first_name": "Robert"})
    assert tx.status == "committed"
    assert ride_world.get("Drivers", 3) is not None

    with pytest.raises(RuntimeError):
        with ride_world.begin_transaction() as tx:
            tx.insert("Drivers", {"id": 4})
            raise RuntimeError("boom")
    assert tx.status == "aborted"
    assert ride_world.get("Drivers", 4) is None


def test_apply_accepts_mutation_records(coordinator):
    tx = coordinator.begin_transaction()
    key = coordinator.apply(tx, Insert("Drivers", {"first_name": "Linda"}))
    coordinator.commit(tx)
    assert key == 1
    assert coordinator.get("Drivers", 1)["first_name"] == "Linda"


def test_generated_ids_follow_existing_rows(ride_world):
    tx = ride_world.begin_transaction()
    first = ride_world.insert(tx, "Passengers", make_passenger(None, "+1-555-0601"))
    second = ride_world.insert(tx, "Passengers", make_passenger(None, "+1-555-0602"))
    ride_world.commit(tx)
    assert (first, second) == (4, 5)


def test_concurrent_inserts_without_ids_both_commit(ride_world):
    first = ride_world.begin_transaction()
    second = ride_world.begin_transaction()
    robert = ride_world.insert(first, "Drivers", {"first_name": "Robert"})
    linda = ride_world.insert(second, "Drivers", {"first_name": "Linda"})
    ride_world.commit(first)
    ride_world.commit(second)

    assert robert != linda
    assert ride_world.get("Drivers", robert)["first_name"] == "Robert"
    assert ride_world.get("Drivers", linda)["first_name"] == "Linda"
    assert ride_world.store.count("Drivers") == 4
    assert ride_world.stats().get("conflicts", 0) == 0


def test_generated_ids_skip_ids_staged_explicitly(ride_world):
    tx = ride_world.begin_transaction()
    ride_world.insert(tx, "Drivers", {"id": 3, "first_name": "Robert"})
    generated = ride_world.insert(tx, "Drivers", {"first_name": "Linda"})
    ride_world.commit(tx)
    assert generated == 4


def test_update_validates_the_merged_row(ride_world):
    tx = ride_world.begin_transaction()
    with pytest.raises(DomainRuleViolation) as excinfo:
        ride_world.update(tx, "Passengers", 1, {"last_name": None})
    assert excinfo.value.rule == "not_null"
    assert not tx.active


def test_version_history_shrinks_without_open_transactions(ride_world):
    store = ride_world.store
    for n in range(5):
        tx = ride_world.begin_transaction()
        ride_world.update(tx, "Drivers", 1, {"first_name": f"Jim{n}"})
        ride_world.insert(tx, "Passengers", make_passenger(None, f"+1-555-080{n}"))
        ride_world.commit(tx)
        assert store.tracked_versions == 0

    reader = ride_world.begin_transaction()
    ride_world.update(reader, "Rides", 1, {"status": "Driver_Assigned"})
    writer = ride_world.begin_transaction()
    ride_world.update(writer, "Rides", 1, {"status": "Canceled"})
    ride_world.commit(writer)
    assert store.tracked_versions > 0

    with pytest.raises(ConcurrentModification):
        ride_world.commit(reader)

    tx = ride_world.begin_transaction()
    ride_world.update(tx, "Drivers", 2, {"first_name": "Maria"})
    ride_world.commit(tx)
    assert store.tracked_versions == 0


def test_concurrent_payments_for_one_ride(ride_world):
    setup = ride_world.begin_transaction()
    ride_world.insert(setup, "Rides", make_ride(5, 2, status="Payment_Pending"))
    ride_world.commit(setup)

    first = ride_world.begin_transaction()
    second = ride_world.begin_transaction()
    ride_world.insert(first, "Payments", {"id": 10, "ride_id": 5, "amount": "27.45"})
    ride_world.insert(second, "Payments", {"id": 11, "ride_id": 5, "amount": "27.45"})

    ride_world.commit(first)
    with pytest.raises((ConcurrentModification, DuplicateKey)):
        ride_world.commit(second)

    payments = list(ride_world.query_by_foreign_key("Payments", "ride_id", 5))
    assert [p["id"] for p in payments] == [10]
    assert ride_world.stats()["conflicts"] == 1


def test_conflict_on_read_row(ride_world):
    reader = ride_world.begin_transaction()
    ride_world.update(reader, "Rides", 1, {"status": "Driver_Assigned"})

    writer = ride_world.begin_transaction()
    ride_world.update(writer, "Rides", 1, {"status": "Canceled"})
    ride_world.commit(writer)

    with pytest.raises(ConcurrentModification) as excinfo:
        ride_world.commit(reader)
    assert ("row", "Rides", 1) in excinfo.value.keys
    assert ride_world.get("Rides", 1)["status"] == "Canceled"


def test_disjoint_transactions_both_commit(ride_world):
    first = ride_world.begin_transaction()
    second = ride_world.begin_transaction()
    ride_world.update(first, "Drivers", 1, {"first_name": "Jim"})
    ride_world.update(second, "Drivers", 2, {"first_name": "Maria"})
    ride_world.commit(first)
    ride_world.commit(second)
    assert ride_world.get("Drivers", 1)["first_name"] == "Jim"
    assert ride_world.get("Drivers", 2)["first_name"] == "Maria"


def test_insert_racing_a_delete_of_its_parent(ride_world):
    setup = ride_world.begin_transaction()
    ride_world.insert(setup, "Drivers", {"id": 3})
    ride_world.commit(setup)

    inserter = ride_world.begin_transaction()
    ride_world.insert(inserter, "Vehicles", make_vehicle("7ABC123", 3))

    deleter = ride_world.begin_transaction()
    ride_world.delete(deleter, "Drivers", 3)
    ride_world.commit(deleter)

    with pytest.raises(ConcurrentModification):
        ride_world.commit(inserter)
    assert ride_world.store.count("Vehicles") == 0


def test_delete_restricted_until_rides_are_gone(ride_world):
    tx = ride_world.begin_transaction()
    with pytest.raises(ReferentialViolation):
        ride_world.delete(tx, "Drivers", 1)

    tx = ride_world.begin_transaction()
    ride_world.delete(tx, "Rides", 1, cascade=True)
    ride_world.delete(tx, "Drivers", 1)
    ride_world.commit(tx)

    assert ride_world.get("Drivers", 1) is None
    assert ride_world.get("Rides", 1) is None
    assert len(ride_world.query_by_foreign_key("Ride_Passengers", "ride_id", 1)) == 0


def test_cascade_removes_owned_rows(ride_world):
    tx = ride_world.begin_transaction()
    ride_world.insert(tx, "Payments", {"id": 1, "ride_id": 1, "amount": "25.50"})
    ride_world.insert(tx, "Earnings", {"id": 1, "payment_id": 1, "commission_amount": "5.10", "driver_earnings": "20.40"})
    ride_world.insert(tx, "Reviews", {"id": 1, "ride_id": 1, "passenger_id": 1, "rating": 5})
    ride_world.commit(tx)

    tx = ride_world.begin_transaction()
    plan = ride_world.delete(tx, "Rides", 1, cascade=True)
    ride_world.commit(tx)

    assert plan[-1] == ("Rides", 1)
    assert plan.index(("Earnings", 1)) < plan.index(("Payments", 1))
    assert set(plan) == {
        ("Ride_Passengers", (1, 1)),
        ("Ride_Passengers", (1, 2)),
        ("Reviews", 1),
        ("Payments", 1),
        ("Earnings", 1),
        ("Rides", 1),
    }
    for table in ("Rides", "Ride_Passengers", "Reviews", "Payments", "Earnings"):
        assert ride_world.store.count(table) == 0
    assert ride_world.store.count("Passengers") == 3


def test_delete_without_cascade_is_restricted_by_owned_rows(ride_world):
    tx = ride_world.begin_transaction()
    with pytest.raises(ReferentialViolation) as excinfo:
        ride_world.delete(tx, "Rides", 1)
    assert excinfo.value.table == "Rides"


def test_threaded_duplicate_phone_race(coordinator):
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def register(n):
        tx = coordinator.begin_transaction()
        coordinator.insert(tx, "Passengers", make_passenger(n, "+1-555-0777"))
        barrier.wait()
        try:
            coordinator.commit(tx)
            outcome = "committed"
        except (ConcurrentModification, DuplicateKey):
            outcome = "rejected"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=register, args=(n,)) for n in range(1, 9)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("committed") == 1
    assert outcomes.count("rejected") == 7
    assert coordinator.store.count("Passengers") == 1


def test_stats_count_outcomes(ride_world):
    tx = ride_world.begin_transaction()
    ride_world.abort(tx)
    tx = ride_world.begin_transaction()
    with pytest.raises(DuplicateKey):
        ride_world.insert(tx, "Drivers", {"id": 1})

    stats = ride_world.stats()
    assert stats["begun"] == 3
    assert stats["committed"] == 1
    assert stats["aborted"] == 2
    assert stats["validation_failures"] == 1
    assert stats["sequence"] == ride_world.store.sequence
