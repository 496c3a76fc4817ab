import os

# Переменные окружения должны быть выставлены до импорта приложения
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["BCRYPT_ROUNDS"] = "4"

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.main import app, Base, get_db

# Настройка тестовой БД (отдельный файл)
TEST_DATABASE_URL = os.environ["DATABASE_URL"]
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 💡 Чистая схема для каждого теста: порядок задач зависит от всего содержимого таблицы
@pytest.fixture(scope="function", autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)

# 💡 Подменяем зависимость get_db
@pytest.fixture(scope="function", autouse=True)
def override_get_db():
    def get_test_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()
    app.dependency_overrides[get_db] = get_test_db
    yield
    app.dependency_overrides.clear()

# 💡 Прямой доступ к БД для подготовки «старых» строк и проверок
@pytest.fixture()
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

# 💡 HTTP-клиент с ASGITransport
@pytest.fixture()
async def aclient():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
