import atexit
import json
import logging

import click
from flask import Flask, jsonify
from flask_login import LoginManager
from werkzeug.exceptions import HTTPException

from .config import Config
from .errors import CredLedgerError
from .logging_config import configure_logging
from .models import User, db
from .routes import api
from .services import build_services

logger = logging.getLogger(__name__)

login_manager = LoginManager()


# ----------------------------
# User Loader
# ----------------------------
@login_manager.user_loader
def load_user(user_id):
    return db.session.execute(
        db.select(User).filter_by(address=str(user_id).lower())
    ).scalar_one_or_none()


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"success": False, "error": "authentication_required",
                    "message": "Authentication required"}), 401


# ----------------------------
# App Factory
# ----------------------------
def create_app(test_config=None, chain=None, content_store=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)
    # multipart overhead on top of the file itself
    app.config.setdefault("MAX_CONTENT_LENGTH", app.config["MAX_FILE_SIZE"] + 1024 * 1024)

    configure_logging(app)
    db.init_app(app)
    login_manager.init_app(app)
    with app.app_context():
        db.create_all()

    services = build_services(app, chain=chain, content_store=content_store)
    app.extensions["credledger"] = services
    atexit.register(services.close)

    app.register_blueprint(api)
    register_error_handlers(app)
    register_commands(app)
    return app


# ----------------------------
# Error Handlers
# ----------------------------
def register_error_handlers(app):
    @app.errorhandler(CredLedgerError)
    def handle_credledger_error(e):
        if e.status_code >= 500:
            logger.error("%s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"success": False, "error": e.name.lower().replace(" ", "_"),
                        "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error")
        return jsonify({"success": False, "error": "internal_error",
                        "message": "Internal server error"}), 500


# ----------------------------
# CLI
# ----------------------------
def register_commands(app):
    services = app.extensions["credledger"]

    @app.cli.command("reconcile")
    @click.option("--limit", default=50, show_default=True, help="Documents to examine in this pass.")
    def reconcile_command(limit):
        """Heal or re-offer documents stuck at status=stored."""
        report = services.call(lambda: services.reconciler.run(limit=limit))
        click.echo(json.dumps(report.to_dict(), indent=2))

    @app.cli.command("prune-logs")
    def prune_logs_command():
        """Delete verification logs, audit events and chain metrics past retention."""
        config = app.config
        counts = {
            "verificationLogs": services.logs.prune(config["VERIFICATION_LOG_RETENTION_DAYS"]),
            "auditEvents": services.audit.prune(config["AUDIT_RETENTION_DAYS"]),
            "chainTransactions": services.chain_txs.prune(config["METRICS_RETENTION_DAYS"]),
        }
        click.echo(json.dumps(counts))

    @app.cli.command("assign-role")
    @click.argument("address")
    @click.argument("role")
    @click.option("--sync/--no-sync", default=True, help="Mirror the role on chain.")
    def assign_role_command(address, role, sync):
        """Set a principal's role (creates the principal if needed)."""
        user = services.principals.get_by_address(address)
        if user is None:
            user = services.principals.create_with_role(address, role)
        else:
            user = services.principals.assign_role(address, role)
        address = user.address
        click.echo(f"{address} -> {user.role}")
        if sync:
            try:
                receipt = services.call(lambda: services.chain.assign_role(address, role))
            except CredLedgerError as e:
                click.echo(f"chain mirror failed: {e.message}", err=True)
            else:
                click.echo(f"chain tx {receipt.tx_hash}")

    @app.cli.command("chain-health")
    def chain_health_command():
        """Print chain connectivity and gas statistics."""
        click.echo(json.dumps(services.call(services.chain.health_check), indent=2))
