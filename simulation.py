"""Concurrent ride-lifecycle workload against a coordinator.

Workers run ride flows in parallel: request a ride with its passengers,
move it through the lifecycle, then settle it with a payment and an earning
while a second transaction races to pay for the same ride. Amounts are random
sample values.
"""

import logging
import random
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal

from errors import ConcurrentModification, DuplicateKey, ValidationFailed

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
COMMISSION_RATE = Decimal("0.20")
CANCEL_PROBABILITY = 0.1
REVIEW_PROBABILITY = 0.6
LIFECYCLE = ["Driver_Assigned", "In_Progress", "Payment_Pending"]
INCIDENT_TYPES = ["Late Pickup", "Route Deviation", "Lost Item", "Dispute", "Cleanliness"]


class SimulationStats:
    def __init__(self):
        self._counts = Counter()
        self._lock = threading.Lock()

    def add(self, name, amount=1):
        with self._lock:
            self._counts[name] += amount

    def as_dict(self):
        with self._lock:
            return dict(self._counts)


def run_in_transaction(coordinator, work, stats, attempts=MAX_ATTEMPTS):
    """Run ``work(tx)`` and commit, starting over on ConcurrentModification."""
    for attempt in range(1, attempts + 1):
        tx = coordinator.begin_transaction()
        try:
            result = work(tx)
            coordinator.commit(tx)
            return result
        except ConcurrentModification:
            stats.add("conflicts_retried")
            logger.debug(f"Transaction {tx.id} conflicted (attempt {attempt}/{attempts})")
            if attempt == attempts:
                raise
        except Exception:
            coordinator.abort(tx)
            raise


def simulate_ride_flow(coordinator, driver_id, passenger_ids, start_time, stats, rng):
    """Drive one ride from request to settlement (or cancellation)."""
    end_time = start_time + timedelta(minutes=rng.randint(5, 60))

    def request_ride(tx):
        ride_id = coordinator.insert(tx, "Rides", {
            "pickup_location": f"{rng.randint(1, 9999)} Main St",
            "dropoff_location": f"{rng.randint(1, 9999)} Market St",
            "start_time": start_time,
            "end_time": end_time,
            "status": "Requested",
            "driver_id": driver_id,
        })
        for passenger_id in passenger_ids:
            coordinator.insert(tx, "Ride_Passengers", {"ride_id": ride_id, "passenger_id": passenger_id})
        return ride_id

    ride_id = run_in_transaction(coordinator, request_ride, stats)
    stats.add("rides_requested")
    logger.debug(f"Ride {ride_id} requested for driver {driver_id} with passengers {passenger_ids}")

    if rng.random() < CANCEL_PROBABILITY:
        def cancel(tx):
            coordinator.update(tx, "Rides", ride_id, {"status": "Canceled"})
            coordinator.insert(tx, "Incidents", {
                "incident_type": "Cancellation",
                "reported_by": "System",
                "status": "Reported",
                "ride_id": ride_id,
                "driver_id": driver_id,
                "passenger_id": passenger_ids[0],
            })

        run_in_transaction(coordinator, cancel, stats)
        stats.add("rides_canceled")
        return ride_id

    for status in LIFECYCLE:
        run_in_transaction(
            coordinator, lambda tx, s=status: coordinator.update(tx, "Rides", ride_id, {"status": s}), stats
        )

    amount = Decimal(rng.randint(800, 6000)) / 100
    commission = (amount * COMMISSION_RATE).quantize(Decimal("0.01"))

    def settle(tx):
        payment_id = coordinator.insert(tx, "Payments", {
            "ride_id": ride_id,
            "amount": amount,
            "transaction_date": end_time,
            "payment_method": rng.choice(["Credit Card", "Cash", "Mobile Wallet", "Debit Card"]),
            "status": "Paid",
        })
        coordinator.insert(tx, "Earnings", {
            "payment_id": payment_id,
            "commission_amount": commission,
            "driver_earnings": amount - commission,
            "transaction_date": end_time,
        })
        coordinator.update(tx, "Rides", ride_id, {"status": "Completed"})

    # Both settlements start from the same snapshot; only one may pay the ride
    for attempt in range(1, MAX_ATTEMPTS + 1):
        first = coordinator.begin_transaction()
        second = coordinator.begin_transaction()
        try:
            settle(first)
            settle(second)
            coordinator.commit(first)
        except ConcurrentModification:
            stats.add("conflicts_retried")
            if attempt == MAX_ATTEMPTS:
                raise
        else:
            break
        finally:
            # abort is a no-op on a committed transaction
            coordinator.abort(first)
            if first.status != "committed":
                coordinator.abort(second)

    try:
        coordinator.commit(second)
        stats.add("double_payments")
        logger.error(f"Ride {ride_id} was paid twice")
    except (ConcurrentModification, DuplicateKey) as e:
        stats.add("duplicate_payments_rejected")
        logger.debug(f"Duplicate payment for ride {ride_id} rejected: {e}")
    finally:
        coordinator.abort(second)
    stats.add("rides_completed")

    if rng.random() < REVIEW_PROBABILITY:
        run_in_transaction(coordinator, lambda tx: coordinator.insert(tx, "Reviews", {
            "ride_id": ride_id,
            "passenger_id": passenger_ids[0],
            "rating": rng.randint(1, 5),
            "comment": rng.choice(["Great ride", "Smooth journey", "Late arrival", "Friendly driver"]),
        }), stats)
        stats.add("reviews")

    if rng.random() < CANCEL_PROBABILITY:
        run_in_transaction(coordinator, lambda tx: coordinator.insert(tx, "Incidents", {
            "incident_type": rng.choice(INCIDENT_TYPES),
            "reported_by": rng.choice(["Driver", "Passenger"]),
            "ride_id": ride_id,
            "driver_id": driver_id,
            "passenger_id": passenger_ids[-1],
        }), stats)
        stats.add("incidents")

    return ride_id


def run_simulation(coordinator, driver_ids, passenger_ids, num_rides, workers=8, seed=None):
    """Run ``num_rides`` ride flows on a thread pool and return the statistics."""
    rng = random.Random(seed)
    stats = SimulationStats()
    base_time = datetime.utcnow().replace(microsecond=0)

    plans = []
    for i in range(num_rides):
        riders = rng.sample(passenger_ids, k=min(len(passenger_ids), rng.randint(1, 2)))
        start_time = base_time + timedelta(minutes=15 * i)
        plans.append((rng.choice(driver_ids), riders, start_time, random.Random(rng.random())))

    logger.info(f"\n========== STARTING RIDE SIMULATION: {num_rides} rides on {workers} workers ==========\n")
    started = time.time()
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            pool.submit(simulate_ride_flow, coordinator, driver_id, riders, start_time, stats, ride_rng)
            for driver_id, riders, start_time, ride_rng in plans
        ]
        for future in futures:
            try:
                future.result()
            except (ConcurrentModification, ValidationFailed) as e:
                stats.add("rides_failed")
                logger.warning(f"Ride flow failed: {e}")
    elapsed = time.time() - started

    summary = stats.as_dict()
    summary["elapsed_seconds"] = round(elapsed, 2)
    log_summary(coordinator, summary)
    return summary


def log_summary(coordinator, summary):
    logger.info("\n=== SIMULATION SUMMARY ===")
    for name in sorted(summary):
        logger.info(f"{name}: {summary[name]}")

    logger.info("\n--- COORDINATOR STATISTICS ---")
    for name, value in sorted(coordinator.stats().items()):
        logger.info(f"{name}: {value}")

    logger.info("\n--- ROW COUNTS ---")
    for name, table_state in coordinator.store.snapshot().tables.items():
        logger.info(f"{name}: {len(table_state.rows)}")
