import logging

from flask import Flask, jsonify
from flask_login import LoginManager
from flask_migrate import Migrate
from passlib.hash import pbkdf2_sha256

from models import db, User, Role
from config import Config
from extensions import limiter
from routes.utils import cache
from routes.decorators import validate_role_permissions
from routes.errors import register_error_handlers

logger = logging.getLogger(__name__)


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    # Refuse to start with a broken permission table
    validate_role_permissions(app.config.get('ROLE_PERMISSIONS'))

    # Cache and rate limiter
    app.config.setdefault('CACHE_TYPE', 'SimpleCache')
    cache.init_app(app)
    limiter.init_app(app)

    # DB and migrations
    db.init_app(app)
    Migrate(app, db)

    # --- Login Manager ---
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            return None
        return db.session.get(User, uid)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Not authorized, please log in'}), 401

    register_error_handlers(app)

    # Register blueprints (lazy imports to avoid circulars)
    from routes.auth import auth_bp
    from routes.users import user_bp
    from routes.customers import customers_bp
    from routes.inventory import inventory_bp
    from routes.ledger import ledger_bp
    from routes.sales import sales_bp
    from routes.replacement import replacement_bp
    for bp in (auth_bp, user_bp, customers_bp, inventory_bp, ledger_bp, sales_bp, replacement_bp):
        app.register_blueprint(bp)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    return app


def seed_essential_data(app):
    """Seeds the first Admin user if the database has none."""
    with app.app_context():
        if User.query.filter_by(role=Role.ADMIN.value).first():
            return False

        username = app.config.get('ADMIN_USERNAME') or 'admin'
        password = app.config.get('ADMIN_PASSWORD')
        if not password:
            logger.warning("No Admin user exists and ADMIN_PASSWORD is not set; skipping seed")
            return False

        try:
            db.session.add(User(username=username, name='Administrator',
                                password_hash=pbkdf2_sha256.hash(password), role=Role.ADMIN.value))
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Error seeding Admin user")
            raise
        logger.info("Seeded Admin user %s", username)
        return True
