# tests/conftest.py
# ---------------------------------------------------------------------
# - One SQLite file per test (tmp_path), tables created from the models
# - No app context is left pushed: each request gets its own, so the
#   logged-in user never leaks between test clients
# - Service-level tests use the `ctx` fixture for an active app context
# - Data fixtures return ids, not ORM instances
# ---------------------------------------------------------------------
from decimal import Decimal

import pytest
from passlib.hash import pbkdf2_sha256

from app import create_app
from config import Config
from models import db, User, Customer, Product, Role

PASSWORD = 'secret123'


class TestConfig(Config):
    TESTING = True
    DEBUG = False
    RATELIMIT_ENABLED = False
    CACHE_TYPE = 'SimpleCache'
    SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'check_same_thread': False, 'timeout': 30}}
    REPAIR_COST_HIGH = '500'
    REPAIR_COST_LOW = '150'
    ADMIN_PASSWORD = None


@pytest.fixture
def app(tmp_path):
    config = type('Config', (TestConfig,), {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
    })
    app = create_app(config)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    """Active app context for calling the service layer directly."""
    with app.app_context():
        yield db.session


@pytest.fixture
def users(app):
    """One active user per role; returns {role: user_id}."""
    ids = {}
    with app.app_context():
        for role in Role:
            user = User(username=role.value.lower(), name=f'{role.value} User',
                        password_hash=pbkdf2_sha256.hash(PASSWORD), role=role.value)
            db.session.add(user)
            db.session.flush()
            ids[role.value] = user.id
        db.session.commit()
    return ids


@pytest.fixture
def admin(ctx, users):
    return db.session.get(User, users['Admin'])


@pytest.fixture
def manager(ctx, users):
    return db.session.get(User, users['Manager'])


@pytest.fixture
def product_id(app):
    with app.app_context():
        product = Product(model_name='GT-100 Charger', brand='Green Tel', type='Product',
                          purchase_price=Decimal('80.00'), sales_price=Decimal('120.00'),
                          dealer_price=Decimal('100.00'), good_qty=50)
        db.session.add(product)
        db.session.commit()
        return product.id


@pytest.fixture
def second_product_id(app):
    with app.app_context():
        product = Product(model_name='GT-200 Cable', brand='Green Tel', type='Product',
                          purchase_price=Decimal('10.00'), sales_price=Decimal('25.00'),
                          dealer_price=Decimal('0.00'), good_qty=5)
        db.session.add(product)
        db.session.commit()
        return product.id


@pytest.fixture
def dealer_id(app):
    with app.app_context():
        dealer = Customer(name='Rahman Electronics', phone='01700000000', district='Dhaka',
                          brand='Green Tel', type='Dealer')
        db.session.add(dealer)
        db.session.commit()
        return dealer.id


@pytest.fixture
def retail_id(app):
    with app.app_context():
        customer = Customer(name='Walk-in Buyer', brand='Both', type='Retail')
        db.session.add(customer)
        db.session.commit()
        return customer.id


def login(client, username, password=PASSWORD):
    return client.post('/auth/login', json={'username': username, 'password': password})


@pytest.fixture
def client_for(app, users):
    """Factory: client_for('Manager') -> test client logged in with that role."""
    def _make(role):
        client = app.test_client()
        response = login(client, role.lower())
        assert response.status_code == 200, response.get_json()
        return client
    return _make
