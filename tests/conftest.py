import pytest
from decimal import Decimal
from unittest.mock import Mock, MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from app.database import get_db
from app.auth.dependencies import get_current_user, get_optional_user
from app.integrations.shopier import ShopierGateway, TokenExchangeResult, TokenGrant
from app.models import Base
from app.models.course import Course, CourseType
from app.models.user import User
from app.routers.checkout import get_gateway


@pytest.fixture
def mock_db():
    """Mock database session"""
    db = MagicMock()
    db.query.return_value = db
    db.filter.return_value = db
    db.first.return_value = None
    db.all.return_value = []
    db.count.return_value = 0
    return db


@pytest.fixture
def db_session():
    """Real session on in-memory SQLite so constraints and row counts are observable"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to work
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def course(db_session):
    c = Course(
        id="C1",
        title="Python 101",
        slug="python-101",
        price=Decimal("200.00"),
        is_active=True,
        course_type=CourseType.ONLINE.value,
        shopier_product_id="43968703",
    )
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture
def registered_user(db_session):
    u = User(id="user_2abc", email="buyer@test.com", name="Ayşe Yılmaz")
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture
def mock_gateway():
    """Gateway double: authorization URL is canned, token exchange succeeds"""
    gateway = Mock(spec=ShopierGateway)
    gateway.build_authorization_url.return_value = "https://www.shopier.com/oauth2/authorize?state=xyz"
    gateway.exchange_code_for_token.return_value = TokenExchangeResult(
        grant=TokenGrant(access_token="access-123", refresh_token="refresh-123", expires_in=3600)
    )
    return gateway


@pytest.fixture
def unauthenticated_client(db_session, mock_gateway):
    """TestClient with SQLite session and gateway double, no auth"""
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_gateway] = lambda: mock_gateway
    app.dependency_overrides[get_optional_user] = lambda: None
    client = TestClient(app)
    yield client, db_session, mock_gateway
    app.dependency_overrides.clear()


@pytest.fixture
def client_with_user(db_session, mock_gateway, registered_user):
    """TestClient authenticated as registered_user"""
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_gateway] = lambda: mock_gateway
    app.dependency_overrides[get_current_user] = lambda: registered_user
    app.dependency_overrides[get_optional_user] = lambda: registered_user
    client = TestClient(app)
    yield client, db_session, registered_user
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)
