import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager


# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (only when a log directory is configured)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'tenant_backup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from tenant_backup.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # Bearer token authentication for every request
    @login_manager.request_loader
    def load_user_from_request(request):
        from tenant_backup.auth import load_user_from_bearer
        return load_user_from_bearer(request.headers.get('Authorization'))

    @login_manager.unauthorized_handler
    def unauthorized():
        response = jsonify({'error': 'Unauthorized'})
        response.status_code = 401
        response.headers['WWW-Authenticate'] = 'Bearer'
        return response

    # Register blueprints
    from tenant_backup.routes import auth_routes, backup_routes, history_routes
    app.register_blueprint(auth_routes.bp)
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(history_routes.bp)

    # Operator commands (flask create-user, flask export-backup)
    from tenant_backup.cli import register_commands
    register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from tenant_backup import models
    from tenant_backup.migrations import init_database_schema

    init_database_schema(app)

    return app
