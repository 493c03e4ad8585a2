import os

os.environ.setdefault("FORUM_BCRYPT_ROUNDS", "4")

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app import create_app
from config import DEFAULT_ADMIN_PASSWORD, DEFAULT_ADMIN_USERNAME
from database import DatabaseManager
from forum import Forum
from users import Role

USER_PASSWORD = "Secret-Pass1"


@pytest_asyncio.fixture
async def forum(tmp_path):
    forum = Forum(DatabaseManager(str(tmp_path / "forum.db")))
    await forum.initialize(bootstrap_admin=False)
    return forum


@pytest.fixture
def make_user(forum):
    async def _make_user(username: str, role: Role = Role.USER):
        user = await forum.users.create_user(username, f"{username}@example.com", "not-a-real-hash", role)
        return user.to_actor()
    return _make_user


@pytest_asyncio.fixture
async def admin(make_user):
    return await make_user("root", Role.ADMIN)


@pytest_asyncio.fixture
async def alice(make_user):
    return await make_user("alice")


@pytest_asyncio.fixture
async def bob(make_user):
    return await make_user("bob")


async def refreshed(forum, actor):
    """Actor as the session layer would rebuild it on the next request."""
    return await forum.users.get_actor(actor.id)


@pytest.fixture
def client(tmp_path):
    app = create_app(str(tmp_path / "api.db"))
    with TestClient(app) as client:
        yield client


def auth_headers(client, username: str, password: str = USER_PASSWORD) -> dict:
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def admin_headers(client) -> dict:
    return auth_headers(client, DEFAULT_ADMIN_USERNAME, DEFAULT_ADMIN_PASSWORD)


def register(client, username: str) -> dict:
    response = client.post("/api/auth/register", json={
        "username": username,
        "email": f"{username}@example.com",
        "password": USER_PASSWORD,
    })
    assert response.status_code == 200, response.text
    body = response.json()
    return {"id": body["user"]["user_id"], "headers": {"Authorization": f"Bearer {body['access_token']}"}}
