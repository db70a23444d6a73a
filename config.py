import os
from dotenv import load_dotenv

# Load variables from .env
load_dotenv()


def _flag(name, default):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "defaultsecret")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///ride_ledger.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    JOURNAL_ENABLED = _flag("JOURNAL_ENABLED", "1")
    SNAPSHOT_INTERVAL_SECONDS = int(os.getenv("SNAPSHOT_INTERVAL_SECONDS", "300"))
    # "warn" logs incident/ride mismatches, "strict" rejects the commit
    INCIDENT_CONSISTENCY = os.getenv("INCIDENT_CONSISTENCY", "warn").strip().lower()
    STRICT_RIDE_TRANSITIONS = _flag("STRICT_RIDE_TRANSITIONS", "0")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SNAPSHOT_INTERVAL_SECONDS = 0
    INCIDENT_CONSISTENCY = "warn"
    STRICT_RIDE_TRANSITIONS = False
