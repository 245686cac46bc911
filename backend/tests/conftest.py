"""
Pytest fixtures for posledger backend tests.

Provides the application on in-memory SQLite, a per-test table wipe, one
organization with a warehouse and a branch, users for every built-in role,
a plain and a serialized product, and opening stock at both locations.
"""

from decimal import Decimal

import pytest

from posledger import create_app
from posledger.extensions import db
from posledger.models import Organization, Location, SerializedUnit
from posledger.models.tenancy import LOCATION_TYPE_WAREHOUSE, LOCATION_TYPE_BRANCH
from posledger.services import inventory_service, permission_service, stock_ledger_service
from posledger.services.auth_service import create_user, create_default_roles, assign_role


PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'BCRYPT_ROUNDS': 4,
        'DUPLICATE_SALE_WINDOW_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def org(db_session):
    org = Organization(name="Acme Phones", code="ACME", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def other_org(db_session):
    org = Organization(name="Beta Retail", code="BETA", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def warehouse(db_session, org):
    location = Location(org_id=org.id, name="Central Warehouse", code="WH", location_type=LOCATION_TYPE_WAREHOUSE)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def branch(db_session, org):
    location = Location(org_id=org.id, name="Downtown Branch", code="BR1", location_type=LOCATION_TYPE_BRANCH)
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def setup_roles(db_session, org):
    """Setup default roles and permissions."""
    create_default_roles(org.id)
    permission_service.initialize_permissions()
    permission_service.assign_default_role_permissions(org.id)


def _make_user(org, username, role, location):
    user = create_user(
        username=username,
        email=f"{username}@acme.test",
        password=PASSWORD,
        org_id=org.id,
        location_id=location.id,
    )
    assign_role(user.id, role)
    return user


@pytest.fixture(scope='function')
def admin_user(org, warehouse, setup_roles):
    return _make_user(org, "alice", "admin", warehouse)


@pytest.fixture(scope='function')
def manager_user(org, branch, setup_roles):
    return _make_user(org, "mona", "manager", branch)


@pytest.fixture(scope='function')
def cashier_user(org, branch, setup_roles):
    return _make_user(org, "carl", "cashier", branch)


@pytest.fixture(scope='function')
def warehouse_user(org, warehouse, setup_roles):
    return _make_user(org, "wes", "warehouse", warehouse)


@pytest.fixture(scope='function')
def checker_user(org, warehouse, setup_roles):
    return _make_user(org, "cher", "checker", warehouse)


@pytest.fixture(scope='function')
def cable(org):
    """Non-serialized product."""
    return inventory_service.create_product(org_id=org.id, sku="CBL-USB-C", name="USB-C Cable")


@pytest.fixture(scope='function')
def phone(org):
    """Serialized product."""
    return inventory_service.create_product(org_id=org.id, sku="PH-X1", name="Phone X1", enable_serial=True)


@pytest.fixture(scope='function')
def cable_variation(cable):
    return cable.variations[0]


@pytest.fixture(scope='function')
def phone_variation(phone):
    return phone.variations[0]


@pytest.fixture(scope='function')
def stock(admin_user, warehouse, branch, cable_variation, phone_variation):
    """
    Opening stock:
    - branch: 100 cables, phones BR-0001..BR-0003
    - warehouse: 50 cables, phones WH-0001..WH-0002
    """
    for location, cables, serials in (
        (branch, 100, ["BR-0001", "BR-0002", "BR-0003"]),
        (warehouse, 50, ["WH-0001", "WH-0002"]),
    ):
        inventory_service.receive_stock(
            location_id=location.id,
            user_id=admin_user.id,
            variation_id=cable_variation.id,
            quantity=Decimal(cables),
            receipt_type="opening",
        )
        inventory_service.receive_stock(
            location_id=location.id,
            user_id=admin_user.id,
            variation_id=phone_variation.id,
            quantity=Decimal(len(serials)),
            receipt_type="purchase",
            unit_cost_cents=25000,
            serials=[{"serial_number": serial} for serial in serials],
        )


def level(variation, location) -> Decimal:
    """Available quantity of a variation at a location."""
    return stock_ledger_service.get_available(variation.id, location.id)


def unit_id(serial_number: str) -> int:
    return db.session.query(SerializedUnit.id).filter_by(serial_number=serial_number).scalar()


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.username))


@pytest.fixture(scope='function')
def manager_headers(client, manager_user):
    return auth_headers(get_auth_token(client, manager_user.username))


@pytest.fixture(scope='function')
def cashier_headers(client, cashier_user):
    return auth_headers(get_auth_token(client, cashier_user.username))
