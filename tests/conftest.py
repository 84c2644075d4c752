import pytest

from app import create_app


@pytest.fixture
def app(tmp_path):
    return create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(tmp_path / "test.db")})


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    client.post("/register", data={"email": "anna@example.com", "name": "Anna Muster", "password": "secret"})
    client.post("/login", data={"email": "anna@example.com", "password": "secret"})
    return client
