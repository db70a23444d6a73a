from datetime import datetime

import pytest

from app import create_app, get_coordinator
from constraints import ConstraintEngine
from store import EntityStore
from transactions import TransactionCoordinator


@pytest.fixture
def store():
    return EntityStore()


@pytest.fixture
def coordinator(store):
    return TransactionCoordinator(store)


@pytest.fixture
def strict_coordinator():
    engine = ConstraintEngine(strict_transitions=True, incident_consistency="strict")
    return TransactionCoordinator(EntityStore(), engine)


@pytest.fixture
def app():
    app = create_app('config.TestConfig')
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def app_coordinator(app):
    return get_coordinator(app)


def make_passenger(passenger_id, phone, **extra):
    row = {"first_name": "Alex", "last_name": "Rider", "phone": phone}
    if passenger_id is not None:
        row["id"] = passenger_id
    row.update(extra)
    return row


def make_vehicle(plate, driver_id, **extra):
    row = {"license_plate": plate, "brand": "Toyota", "model": "Camry", "color": "Silver", "type": "Sedan", "driver_id": driver_id}
    row.update(extra)
    return row


def make_ride(ride_id, driver_id, status="Requested", start="2023-01-01T08:00", end="2023-01-01T08:30"):
    return {
        "id": ride_id,
        "pickup_location": "123 Main St, Los Angeles",
        "dropoff_location": "456 Hollywood Blvd",
        "start_time": start,
        "end_time": end,
        "status": status,
        "driver_id": driver_id,
    }


@pytest.fixture
def ride_world(coordinator):
    """Two drivers, three passengers and ride 1 (driver 1, passengers 1 and 2)."""
    tx = coordinator.begin_transaction()
    coordinator.insert(tx, "Drivers", {"id": 1, "first_name": "James", "last_name": "Smith", "rating": "4.75"})
    coordinator.insert(tx, "Drivers", {"id": 2, "first_name": "Mary", "last_name": "Johnson", "rating": 4.9})
    for passenger_id in (1, 2, 3):
        coordinator.insert(tx, "Passengers", make_passenger(passenger_id, f"+1-555-010{passenger_id}"))
    coordinator.insert(tx, "Rides", make_ride(1, 1))
    coordinator.insert(tx, "Ride_Passengers", {"ride_id": 1, "passenger_id": 1})
    coordinator.insert(tx, "Ride_Passengers", {"ride_id": 1, "passenger_id": 2})
    coordinator.commit(tx)
    return coordinator


START = datetime(2023, 1, 1, 8, 0)
