import logging
import os
import sys

from flask import Flask, jsonify
from app.extensions import db, login_manager
from config import Config


def setup_logging(level="INFO"):
    """Configure the root logger once with a standard format."""
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        root.setLevel(numeric_level)
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
    root.setLevel(numeric_level)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    setup_logging(app.config.get('LOG_LEVEL', 'INFO'))

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # User loader for Flask-Login
    from app.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'message': 'Authentication required'}), 401

    register_error_handlers(app)

    # Register blueprints
    from app.routes.auth import auth_bp
    from app.routes.kametis import kametis_bp
    from app.routes.payments import payments_bp
    from app.routes.payouts import payouts_bp
    from app.routes.disputes import disputes_bp
    from app.routes.admin import admin_bp
    from app.routes.loans import loans_bp
    from app.routes.risk import risk_bp
    from app.routes.notifications import notifications_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(kametis_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(payouts_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(loans_bp)
    app.register_blueprint(risk_bp)
    app.register_blueprint(notifications_bp)

    from app.cli import register_commands
    register_commands(app)

    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///') and \
            ':memory:' not in app.config['SQLALCHEMY_DATABASE_URI']:
        os.makedirs(app.instance_path, exist_ok=True)

    with app.app_context():
        db.create_all()
        logging.getLogger(__name__).debug("Database tables created")

    return app


def register_error_handlers(app):
    def _error(message, status):
        return jsonify({'success': False, 'message': message}), status

    @app.errorhandler(404)
    def not_found(e):
        return _error('Resource not found', 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error('Method not allowed', 405)

    @app.errorhandler(413)
    def too_large(e):
        return _error('Upload is too large', 413)

    @app.errorhandler(500)
    def server_error(e):
        logging.getLogger(__name__).error("Unhandled error: %s", e)
        return _error('Internal server error', 500)
