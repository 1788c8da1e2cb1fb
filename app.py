import logging

from flask import Flask, jsonify
from config import Config
from routes import health_bp, booking_bp, audit_bp, webhook_bp

from models import db
from flask_migrate import Migrate
from services.booking_engine import BookingEngine
from services.errors import BookingError
from services.notifications import Notifier
from store import StoreUnavailableError, create_store

logger = logging.getLogger(__name__)


def create_app(config_object=Config, **overrides):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config.update(overrides)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(webhook_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Booking engine and its collaborators
    store = create_store(app.config, db=db)
    notifier = Notifier(
        store,
        app=app,
        asynchronous=app.config.get("NOTIFICATIONS_ASYNC", True),
        max_workers=app.config.get("NOTIFICATION_WORKERS", 2),
    )
    app.extensions["document_store"] = store
    app.extensions["notifier"] = notifier
    app.extensions["booking_engine"] = BookingEngine.from_config(app.config, store, notifier=notifier)

    @app.errorhandler(BookingError)
    def _booking_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(StoreUnavailableError)
    def _store_unavailable(exc):
        logger.error("Document store unavailable: %s", exc)
        return jsonify(error="Booking storage is temporarily unavailable", code="store_unavailable"), 503

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp


    register_cli(app)


    return app

#-------------------------
import click
from flask import current_app

def register_cli(app):
    @app.cli.command("show-booking")
    @click.argument("booking_id")
    @click.option("--codes", is_flag=True, help="Include start and completion codes.")
    def show_booking(booking_id, codes):
        """Print one booking document."""
        try:
            booking = current_app.extensions["booking_engine"].get_booking(booking_id)
        except BookingError as exc:
            raise click.ClickException(exc.message)

        for key, value in booking.to_dict(include_codes=codes).items():
            if value is not None:
                click.echo(f"{key}: {value}")

    @app.cli.command("booked-slots")
    @click.argument("provider_id")
    @click.argument("date")
    def booked_slots(provider_id, date):
        """List a provider's booked start times for one day (YYYY-MM-DD)."""
        try:
            slots = current_app.extensions["booking_engine"].list_booked_slots(provider_id, date)
        except BookingError as exc:
            raise click.ClickException(exc.message)

        if not slots:
            click.echo("No booked slots")
            return
        for start in slots:
            click.echo(start)

    @app.cli.command("regenerate-code")
    @click.argument("booking_id")
    def regenerate_code(booking_id):
        """Issue a fresh completion code for an in-progress booking."""
        try:
            code = current_app.extensions["booking_engine"].regenerate_completion_code(booking_id)
        except BookingError as exc:
            raise click.ClickException(exc.message)

        click.echo(f"New completion code for {booking_id}: {code}")

#-------------------------




if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
