# config.py
import os


def _env_number(name, default, cast=float):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")

    # ----- PostgreSQL or SQLite (instance folder) -----
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL") or "sqlite:///rapidred.db"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # matching / lifecycle policy
    MATCH_RADIUS_KM = _env_number("MATCH_RADIUS_KM", 50.0)
    DONATION_SCHEDULE_OFFSET_HOURS = _env_number("DONATION_SCHEDULE_OFFSET_HOURS", 24.0)
    REQUEST_TTL_DAYS = _env_number("REQUEST_TTL_DAYS", 7.0)
    MIN_DAYS_BETWEEN_DONATIONS = _env_number("MIN_DAYS_BETWEEN_DONATIONS", 90, int)
    CONFLICT_RETRIES = _env_number("CONFLICT_RETRIES", 3, int)

    SOCKETIO_ASYNC_MODE = os.getenv("SOCKETIO_ASYNC_MODE") or None  # None: let Flask-SocketIO pick
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
