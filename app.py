from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from apscheduler.schedulers.background import BackgroundScheduler
import atexit
import logging

db = SQLAlchemy()
logger = logging.getLogger(__name__)


def create_app(config_class='config.Config'):
    app = Flask(__name__)
    app.config.from_object(config_class)

    db.init_app(app)

    from constraints import ConstraintEngine
    from journal import Journal, take_snapshot
    from store import EntityStore
    from transactions import TransactionCoordinator
    from views import api

    with app.app_context():
        db.create_all()

    engine = ConstraintEngine(
        strict_transitions=app.config['STRICT_RIDE_TRANSITIONS'],
        incident_consistency=app.config['INCIDENT_CONSISTENCY'],
    )
    journal = Journal(app) if app.config['JOURNAL_ENABLED'] else None
    coordinator = TransactionCoordinator(EntityStore(), engine, journal)
    coordinator.recover()
    app.extensions['ride_ledger'] = coordinator

    app.register_blueprint(api)

    interval = app.config['SNAPSHOT_INTERVAL_SECONDS']
    if journal is not None and interval > 0:
        scheduler = BackgroundScheduler()
        scheduler.add_job(func=lambda: take_snapshot(coordinator), trigger="interval", seconds=interval)
        scheduler.start()
        app.extensions['ride_ledger_scheduler'] = scheduler
        # Shut down the scheduler when exiting the app
        atexit.register(lambda: scheduler.shutdown(wait=False))
        logger.info(f"Snapshot scheduler started (every {interval} seconds)")

    return app


def get_coordinator(app):
    return app.extensions['ride_ledger']
