"""
Flask application factory.

Creates the app, configures logging, registers the run admin blueprint.
"""
import os
from flask import Flask


def create_app():
    """Create and configure the Flask application."""
    from customer_intel.logging_config import configure_logging

    app = Flask(__name__)
    configure_logging(app)

    app.secret_key = os.getenv('SECRET_KEY', 'dev-secret-change-me')
    app.json.sort_keys = False

    from customer_intel.routes.runs import bp as runs_bp
    app.register_blueprint(runs_bp)

    # Import models so Base.metadata knows about them.
    # Schema is managed by Alembic; no create_all() here.
    import importlib
    for name in ('company', 'source', 'run', 'nb_result', 'snapshot', 'diff', 'telemetry'):
        importlib.import_module(f'customer_intel.models.{name}')

    return app
