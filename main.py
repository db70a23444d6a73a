"""Ride Ledger

A transactional store for ride-hailing data: drivers, licenses, passengers,
vehicles, rides, ride passengers, reviews, incidents, payments and earnings.
Every mutation goes through a transaction; commits are validated against the
schema's rules and published atomically, and each commit is journaled so the
store can be rebuilt after a restart.

Commands:
  - Initialize DB (creates journal tables):
      python main.py init_db

  - Load the reference data set:
      python main.py seed

  - Run simulation (generates drivers/passengers and runs concurrent ride flows):
      python main.py simulate

  - Write a snapshot of the store and prune the commit log:
      python main.py snapshot

  - Run server (read-only Flask endpoints to inspect the store):
      python main.py runserver

Ride Lifecycle:
  - Requested: A ride is requested with pickup and dropoff locations
  - Driver_Assigned: A driver is assigned to the ride
  - In_Progress: The ride is under way
  - Payment_Pending: The ride is over and awaits payment
  - Completed / Canceled: Terminal, the status can no longer change
"""

import os
import sys
import logging
from faker import Faker

from config import Config

# Set up logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration constants
NUM_DRIVERS = int(os.getenv("SIM_DRIVERS", "15"))
NUM_PASSENGERS = int(os.getenv("SIM_PASSENGERS", "10"))
NUM_RIDES = int(os.getenv("SIM_RIDES", "40"))
SIM_WORKERS = int(os.getenv("SIM_WORKERS", "8"))

# Initialize faker for generating random names
faker = Faker()

from app import create_app, db, get_coordinator
from seed import generate_fleet, load_reference_data
from simulation import run_simulation

# Create Flask application
app = create_app()
coordinator = get_coordinator(app)


# ---------------- CLI ENTRYPOINT ----------------
def init_db():
    """Initialize the journal tables"""
    with app.app_context():
        db.create_all()
        logger.info("Database initialized")


def seed():
    """Load the reference data set into an empty store"""
    if coordinator.store.count("Drivers") > 0:
        logger.info("Store already holds data, skipping reference data")
        return
    inserted, warnings = load_reference_data(coordinator)
    for warning in warnings:
        logger.warning(f"Reference data inconsistency: {warning}")
    logger.info(f"Seeded {inserted} rows")


def simulate():
    """Run the complete simulation"""
    driver_ids, passenger_ids = generate_fleet(coordinator, faker, NUM_DRIVERS, NUM_PASSENGERS)
    run_simulation(coordinator, driver_ids, passenger_ids, NUM_RIDES, workers=SIM_WORKERS)
    logger.info("Simulation completed successfully")


def snapshot():
    """Write a snapshot of the committed state"""
    sequence = coordinator.snapshot()
    if sequence is None:
        logger.warning("Journal is disabled, nothing to snapshot")
    else:
        logger.info(f"Snapshot stored at sequence {sequence}")


def run_server():
    """Run the Flask server"""
    app.run(debug=False, host='0.0.0.0', port=int(os.getenv("PORT", "5000")))


COMMANDS = {
    'init_db': init_db,
    'seed': seed,
    'simulate': simulate,
    'snapshot': snapshot,
    'runserver': run_server,
}

if __name__ == '__main__':
    if len(sys.argv) < 2:
        print("Usage: python main.py [init_db|seed|simulate|snapshot|runserver]")
        sys.exit(1)

    command = COMMANDS.get(sys.argv[1])
    if command is None:
        print(f"Unknown command. Available commands: {', '.join(COMMANDS)}")
        sys.exit(1)
    command()
