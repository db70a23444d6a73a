"""Reference data and generated fleets."""

import json
import logging
import os
import random
from decimal import Decimal

logger = logging.getLogger(__name__)

SEED_DATA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "seed_data.json")
VEHICLE_TYPES = ["Sedan", "SUV", "Electric", "Luxury", "Wagon"]
VEHICLE_MODELS = {
    "Toyota": ["Camry", "Corolla", "RAV4"],
    "Honda": ["Accord", "Civic", "CR-V"],
    "Ford": ["Fusion", "Focus", "Explorer"],
    "Hyundai": ["Sonata", "Tucson"],
    "Tesla": ["Model 3", "Model Y"],
}


def load_seed_groups(path=SEED_DATA_PATH):
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)["groups"]


def load_reference_data(coordinator, path=SEED_DATA_PATH):
    """Insert the sample data set, one transaction per insert group.

    Returns the number of rows inserted and the consistency warnings raised
    along the way.
    """
    inserted = 0
    warnings = []
    for group in load_seed_groups(path):
        table = group["table"]
        tx = coordinator.begin_transaction()
        for row in group["rows"]:
            coordinator.insert(tx, table, row)
        result = coordinator.commit(tx)
        inserted += len(group["rows"])
        warnings.extend(result.warnings)
        logger.info(f"Seeded {len(group['rows'])} {table} rows (sequence {result.sequence})")

    logger.info(f"Reference data loaded: {inserted} rows, {len(warnings)} consistency warnings")
    return inserted, warnings


def generate_fleet(coordinator, faker, num_drivers, num_passengers, rng=None):
    """Create Faker-generated drivers (each with a vehicle) and passengers.

    Returns (driver ids, passenger ids).
    """
    rng = rng or random.Random()
    driver_ids = []
    passenger_ids = []

    tx = coordinator.begin_transaction()
    for _ in range(num_drivers):
        driver_id = coordinator.insert(tx, "Drivers", {
            "first_name": faker.first_name()[:50],
            "last_name": faker.last_name()[:50],
            "rating": Decimal(rng.randint(300, 500)) / 100,
        })
        brand = rng.choice(sorted(VEHICLE_MODELS))
        coordinator.insert(tx, "Vehicles", {
            "license_plate": faker.unique.license_plate()[:50],
            "brand": brand,
            "model": rng.choice(VEHICLE_MODELS[brand]),
            "color": faker.color_name()[:50],
            "type": rng.choice(VEHICLE_TYPES),
            "driver_id": driver_id,
        })
        driver_ids.append(driver_id)

    for _ in range(num_passengers):
        passenger_ids.append(coordinator.insert(tx, "Passengers", {
            "first_name": faker.first_name()[:50],
            "last_name": faker.last_name()[:50],
            "phone": faker.unique.phone_number()[:25],
        }))
    coordinator.commit(tx)

    logger.info(f"Created {len(driver_ids)} drivers and {len(passenger_ids)} passengers")
    return driver_ids, passenger_ids
