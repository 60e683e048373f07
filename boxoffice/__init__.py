"""
Boxoffice Application Factory.
Creates and configures the Flask application instance.
"""
import os
import json
import logging
import uuid
from datetime import datetime, timezone

import click
from flask import Flask, request, g, jsonify, has_app_context

from boxoffice.config import config
from boxoffice.extensions import init_extensions, db


def _init_sentry(app):
    """Initialize Sentry error tracking for production."""
    dsn = app.config.get('SENTRY_DSN') or os.environ.get('SENTRY_DSN')
    if not dsn:
        app.logger.info('SENTRY_DSN not set, error tracking disabled.')
        return

    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(os.environ.get('SENTRY_TRACES_RATE', '0.1')),
        environment=os.environ.get('FLASK_ENV', 'production'),
        send_default_pii=False,
    )
    app.logger.info('Sentry error tracking initialized.')


def create_app(config_name=None, config_overrides=None):
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration to use (development, testing, production)
        config_overrides: Optional dict applied on top of the configuration class

    Returns:
        Configured Flask application instance
    """
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)

    # Load configuration
    config_class = config[config_name]
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize Sentry (production only)
    if config_name == 'production':
        _init_sentry(app)

    # Call init_app if available (production validation happens here)
    if hasattr(config_class, 'init_app'):
        config_class.init_app(app)

    # Initialize extensions
    init_extensions(app)

    # Payment gateway (Stripe or offline cash desk)
    from boxoffice.services.payment_gateway import init_payment_gateway
    init_payment_gateway(app)

    register_blueprints(app)
    register_error_handlers(app)
    register_cli_commands(app)
    configure_logging(app)

    return app


def register_blueprints(app):
    """Register all application blueprints."""
    from boxoffice.blueprints.api import api_bp

    # REST API v1 (JWT auth)
    app.register_blueprint(api_bp, url_prefix='/api/v1')


def register_error_handlers(app):
    """Register error handlers for domain errors and common HTTP errors."""
    from boxoffice.errors import TicketingError

    @app.errorhandler(TicketingError)
    def ticketing_error(error):
        if error.status >= 500:
            app.logger.warning('%s: %s', error.code, error.message)
        return jsonify({'error': error.to_dict()}), error.status

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({'error': {'code': 'bad_request', 'message': 'Bad request.'}}), 400

    @app.errorhandler(401)
    def unauthorized(error):
        return jsonify({'error': {'code': 'unauthorized', 'message': 'Authentication required.'}}), 401

    @app.errorhandler(403)
    def forbidden(error):
        return jsonify({'error': {'code': 'forbidden', 'message': 'Access denied.'}}), 403

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': {'code': 'not_found', 'message': 'Resource not found.'}}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': {'code': 'method_not_allowed', 'message': 'Method not allowed.'}}), 405

    @app.errorhandler(429)
    def ratelimit_error(error):
        return jsonify({'error': {'code': 'rate_limit_exceeded', 'message': 'Too many requests. Try again later.'}}), 429

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        request_id = g.get('request_id', '-')
        app.logger.error('500 Internal Server Error: %s (request_id=%s)', type(error).__name__, request_id, exc_info=True)
        return jsonify({'error': {'code': 'internal_error', 'message': 'Internal server error.', 'request_id': request_id}}), 500


def register_cli_commands(app):
    """Register custom CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create tables and seed the cancellation reasons (causali)."""
        from boxoffice.models.ticket import CancellationReason, DEFAULT_CANCELLATION_REASONS

        db.create_all()
        for code, name in DEFAULT_CANCELLATION_REASONS:
            if db.session.get(CancellationReason, code) is None:
                db.session.add(CancellationReason(code=code, name=name))
                print(f"Created cancellation reason: {code} {name}")
            else:
                print(f"Cancellation reason already exists: {code}")
        db.session.commit()
        print("Database initialized.")

    @app.cli.command('create-operator')
    @click.argument('email')
    @click.option('--first-name', default='Box')
    @click.option('--last-name', default='Office')
    @click.option('--level', type=click.Choice(['admin', 'manager', 'cashier', 'scanner']), default='cashier')
    @click.password_option()
    def create_operator(email, first_name, last_name, level, password):
        """Create a box office operator account."""
        from boxoffice.models.user import User, AccessLevel

        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            raise click.ClickException(f'Operator {email} already exists.')
        user = User(email=email, first_name=first_name, last_name=last_name, access_level=AccessLevel(level))
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        print(f"Created {level} operator: {email}")

    @app.cli.command('retry-refunds')
    def retry_refunds():
        """Retry refunds of cancelled tickets that did not go through."""
        from boxoffice.services.refund_service import RefundCoordinator

        pending = RefundCoordinator.pending_refunds()
        if not pending:
            print("No pending refunds.")
            return

        print(f"Retrying {len(pending)} refund(s)...")
        succeeded, failed = RefundCoordinator.retry_pending_refunds()
        for result in succeeded:
            print(f"  OK   ticket {result.ticket_id}: {result.amount} ({result.refund_reference or 'no gateway'})")
        for error in failed:
            print(f"  FAIL ticket {error.ticket_id}: {error.message}")
        print(f"Done: {len(succeeded)} refunded, {len(failed)} failed")

    @app.cli.command('cleanup-holds')
    def cleanup_holds():
        """Put seats whose hold expired back on sale."""
        from boxoffice.services.hold_service import SeatHoldService

        released = SeatHoldService.cleanup_expired_holds()
        print(f"Released {released} expired seat hold(s)")

    @app.cli.command('verify-seals')
    @click.argument('event_id', type=int)
    def verify_seals(event_id):
        """Recompute every fiscal seal of an event and report mismatches."""
        from boxoffice.models.ticket import Ticket
        from boxoffice.services.numbering_service import NumberingService

        tickets = Ticket.query.filter_by(ticketed_event_id=event_id).order_by(Ticket.progressive_number).all()
        mismatches = [t for t in tickets if not NumberingService.verify_seal(t)]
        expected = list(range(1, len(tickets) + 1))
        gaps = [t.progressive_number for t in tickets] != expected

        for ticket in mismatches:
            print(f"  MISMATCH #{ticket.progressive_number} (ticket {ticket.id})")
        if gaps:
            print("  Progressive numbers are not a gapless 1..N sequence")
        print(f"Checked {len(tickets)} ticket(s): {len(mismatches)} seal mismatch(es)")
        if mismatches or gaps:
            raise SystemExit(1)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production (cloud log aggregation)."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        if has_app_context():
            log_entry['request_id'] = g.get('request_id', '-')
        if record.exc_info and record.exc_info[0]:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def configure_logging(app):
    """Configure application logging.

    Production: JSON to stdout, shared by app.logger and the service loggers.
    Development: plain text, DEBUG level.
    """
    if app.testing:
        return

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4())[:8])

    @app.after_request
    def log_request(response):
        app.logger.info('%s %s %s', request.method, request.path, response.status_code)
        response.headers['X-Request-ID'] = g.get('request_id', '-')
        return response

    level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)

    # app.logger is the "boxoffice" logger, service loggers propagate to it
    if not app.debug:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(JSONFormatter())
        stream_handler.setLevel(level)

        # Clear existing handlers to avoid duplicates
        app.logger.handlers.clear()
        app.logger.addHandler(stream_handler)
        app.logger.setLevel(level)
        app.logger.info('Boxoffice startup (JSON logging)')
    else:
        app.logger.setLevel(logging.DEBUG)
        app.logger.info('Boxoffice startup (development)')
