import logging
import secrets

import click
from flask import Flask

from config import Config
from models import db
from routes import auth_bp, health_bp
from security.errors import register_error_handlers
from security.pipeline import init_pipeline
from security.services import get_services, init_security
from utils.auth_context import load_current_user
from utils.sweeper import Sweeper, run_sweeps


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Refuses to build (ConfigurationError) without a strong JWT_SECRET
    services = init_security(app)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)

    # Database init
    db.init_app(app)
    with app.app_context():
        db.create_all()

    register_error_handlers(app)

    # Order matters: context/detection/sanitization first, then bearer auth
    init_pipeline(app)

    @app.before_request
    def _load_user():
        load_current_user()

    interval = app.config.get("SWEEP_INTERVAL_SECONDS", 0)
    if interval and not app.config.get("TESTING"):
        app.extensions["security_sweeper"] = Sweeper(
            services,
            idle_seconds=app.config["SESSION_IDLE_TIMEOUT_SECONDS"],
            interval=interval,
        ).start()

    register_cli(app)

    return app

#-------------------------

def register_cli(app):
    @app.cli.command("generate-secret")
    def generate_secret():
        """Print a random value suitable for JWT_SECRET."""
        click.echo(secrets.token_urlsafe(64))

    @app.cli.command("sweep")
    def sweep():
        """Run one expiry sweep over this process's sessions, rate limits and CSRF tokens."""
        counts = run_sweeps(get_services(), app.config["SESSION_IDLE_TIMEOUT_SECONDS"])
        click.echo(", ".join(f"{name}={count}" for name, count in counts.items()))

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5000)
