import os
import shutil
import tempfile
from decimal import Decimal

import pytest

# File-backed SQLite so a second session (concurrent conversion tests) sees committed rows
_DB_DIR = tempfile.mkdtemp(prefix='storefront-tests-')
os.environ.setdefault('TEST_DATABASE_URL', f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}")

from storefront import create_app  # noqa: E402
from storefront.database import Base, create_all, get_engine, get_session  # noqa: E402
from storefront.models import (  # noqa: E402
    Product, ProductType, PriceRange, ShippingMethod, User, UserRole, Voucher, VoucherType
)
from storefront.services import quote_service  # noqa: E402


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestingConfig')
    with app.app_context():
        create_all()
    yield app
    get_engine().dispose()
    shutil.rmtree(_DB_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def app_context(app):
    """Every test runs inside an app context and starts from empty tables."""
    ctx = app.app_context()
    ctx.push()
    yield
    db_session = get_session()
    db_session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        db_session.execute(table.delete())
    db_session.commit()
    db_session.remove()
    app.extensions['config_provider'].invalidate()
    app.extensions.pop('payment_gateway', None)
    ctx.pop()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session():
    """Database session shared with the code under test."""
    return get_session()


@pytest.fixture
def config_provider(app):
    return app.extensions['config_provider']


@pytest.fixture
def print_product(session):
    """DTF print product with three quantity bands."""
    product = Product(
        name='DTF Textil',
        slug='dtf-textil',
        product_type=ProductType.DTF_TEXTILE,
        base_price=Decimal('15.00'),
        unit='m',
        is_active=True,
    )
    product.price_ranges = [
        PriceRange(from_qty=Decimal('1'), to_qty=Decimal('9.99'), price=Decimal('15.00'), discount_pct=Decimal('0')),
        PriceRange(from_qty=Decimal('10'), to_qty=Decimal('49.99'), price=Decimal('12.00'), discount_pct=Decimal('10')),
        PriceRange(from_qty=Decimal('50'), to_qty=None, price=Decimal('10.00'), discount_pct=Decimal('15')),
    ]
    session.add(product)
    session.commit()
    return product


@pytest.fixture
def shipping_method(session):
    method = ShippingMethod(name='Mensajería 24h', price=Decimal('6.00'), is_active=True, voucher_eligible=True)
    session.add(method)
    session.commit()
    return method


@pytest.fixture
def customer(session):
    user = User(email='cliente@example.com', name='Cliente Uno', role=UserRole.CUSTOMER)
    user.set_password('secret123')
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def professional(session):
    user = User(
        email='empresa@example.com',
        name='Empresa SL',
        role=UserRole.CUSTOMER,
        is_professional=True,
        company='Empresa SL',
        tax_id='B12345678',
    )
    user.set_password('secret123')
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def admin_user(session):
    user = User(email='admin@example.com', name='Admin', role=UserRole.ADMIN)
    user.set_password('admin123')
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def meter_voucher(session, customer):
    """10 m and 2 shipments for the customer."""
    voucher = Voucher(
        code='BONO-TEST0001',
        name='Bono 10 metros',
        type=VoucherType.METERS,
        user_id=customer.id,
        initial_meters=Decimal('10'),
        remaining_meters=Decimal('10'),
        initial_shipments=2,
        remaining_shipments=2,
        is_active=True,
    )
    session.add(voucher)
    session.commit()
    return voucher


@pytest.fixture
def quote_request(session, customer):
    """Factory for PENDING_REVIEW quotes."""
    def _create(**overrides):
        data = {
            'customer_name': customer.name,
            'customer_email': customer.email,
            'design_file_url': 'https://files.example.com/design.pdf',
            'design_file_name': 'design.pdf',
        }
        data.update(overrides)
        return quote_service.create_quote_request(session, **data)
    return _create


@pytest.fixture
def login(client):
    """Log a user into the test client session."""
    def _login(user):
        with client.session_transaction() as flask_session:
            flask_session['user_id'] = user.id
        return client
    return _login
