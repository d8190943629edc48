# app.py
import logging
import os
from datetime import date

import click
from flask import Flask, jsonify

from config import Config
from errors import RapidRedError, AlreadyRespondedError, InvalidTransitionError
from models import db, User
from notifications import socketio, NotificationBus
from routes import api
from service import BloodRequestService


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.from_mapping(test_config)
    os.makedirs(app.instance_path, exist_ok=True)

    logging.basicConfig(level=app.config["LOG_LEVEL"],
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    db.init_app(app)
    socketio.init_app(app, cors_allowed_origins="*", async_mode=app.config["SOCKETIO_ASYNC_MODE"])
    app.extensions["rapidred"] = BloodRequestService.from_config(app.config, NotificationBus(socketio))

    app.register_blueprint(api, url_prefix="/api")
    register_error_handlers(app)
    register_commands(app)

    @app.route("/")
    def index():
        return jsonify({"message": "RapidRed API running"})

    return app


def register_error_handlers(app):
    @app.errorhandler(RapidRedError)
    def handle_rapidred_error(e):
        body = {"success": False, "error": type(e).__name__, "message": e.message}
        if isinstance(e, AlreadyRespondedError):
            body["prior_status"] = e.prior_status
        elif isinstance(e, InvalidTransitionError):
            body["current_status"] = e.current
        return jsonify(body), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"success": False, "message": "Not found"}), 404


# ==========================================
# CLI
# ==========================================
DEMO_USERS = [
    # name, phone, role, blood group, lat, lng
    ("John Donor", "1234567890", "donor", "O+", 40.7128, -74.0060),
    ("Asha Donor", "1234567891", "donor", "O-", 40.7306, -73.9352),
    ("Ravi Donor", "1234567892", "donor", "A+", 40.6782, -73.9442),
    ("Lena Donor", "1234567893", "donor", "B+", 40.7580, -73.9855),
    ("Jane Recipient", "0987654321", "recipient", "A+", 40.7411, -73.9897),
    ("Mike Delivery", "5555555555", "delivery", None, 40.7484, -73.9857),
    ("Admin User", "1111111111", "admin", None, None, None),
]


def register_commands(app):
    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("[OK] Tables created")

    @app.cli.command("seed-demo")
    def seed_demo():
        """Create or reset the demo users."""
        db.create_all()
        for name, phone, role, group, lat, lng in DEMO_USERS:
            u = User.query.filter_by(phone=phone).first()
            if not u:
                u = User(phone=phone)
                db.session.add(u)
            u.name, u.role, u.blood_group = name, role, group
            u.latitude, u.longitude = lat, lng
            u.eligible_to_donate = role == "donor"
            u.is_active = True
        db.session.commit()
        for u in User.query.order_by(User.id).all():
            click.echo(f"{u.id} {u.name} {u.role} {u.blood_group or '-'}")

    @app.cli.command("expire-requests")
    def expire_requests():
        """Cancel open requests past their expiry date."""
        expired = app.extensions["rapidred"].expire_overdue()
        click.echo(f"[OK] {len(expired)} request(s) expired on {date.today().isoformat()}")
