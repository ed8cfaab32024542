import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from app.models.models import Dealer, User
from app.services.realtime import realtime_emitter


@pytest.fixture(name="engine")
def engine_fixture():
    """
    Временная in-memory SQLite БД. StaticPool - чтобы все сессии теста видели одну БД.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    """
    Создает и предоставляет сессию для временной БД.
    Эта фикстура доступна для всех тестов благодаря conftest.py.
    """
    with Session(engine) as session:
        yield session


@pytest.fixture(name="events")
def events_fixture():
    """
    Собирает все события, разосланные через realtime_emitter во время теста.
    Подписчик синхронный, поэтому события видны сразу после вызова сервиса.
    """
    received = []

    def record(event):
        received.append(event)

    unsubscribe = realtime_emitter.subscribe_all(record)
    yield received
    unsubscribe()


def _save(session: Session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


@pytest.fixture(name="dealer")
def dealer_fixture(session: Session) -> Dealer:
    return _save(session, Dealer(name="Lakeside RV", code="LRV"))


@pytest.fixture(name="dealer_user")
def dealer_user_fixture(session: Session, dealer: Dealer) -> User:
    return _save(
        session,
        User(first_name="Dana", last_name="Miller", role="dealer_admin", dealer_id=dealer.id, telegram_id=1001),
    )


@pytest.fixture(name="agent")
def agent_fixture(session: Session) -> User:
    return _save(session, User(first_name="Alex", last_name="Stone", role="admin", telegram_id=2001))


@pytest.fixture(name="second_agent")
def second_agent_fixture(session: Session) -> User:
    return _save(session, User(first_name="Sam", last_name="Reed", role="super_admin", telegram_id=2002))
