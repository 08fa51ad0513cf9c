import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_MPIN"] = "246810"
os.environ["CUSTOMER_SERVICE_MPIN"] = "135790"
os.environ.pop("SMTP_HOST", None)

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

import app as web
import auth_service
from db import User, engine, init_db

PASSWORD = "correct-horse-9"


@pytest.fixture
def session():
    SQLModel.metadata.drop_all(engine)
    init_db()
    with Session(engine) as s:
        yield s


@pytest.fixture
def client(session):
    web.login_attempts.clear()
    return TestClient(web.app)


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    def _make(role="user", plan_type="starter", email=None, first_name="Ada", last_name="Lovelace"):
        counter["n"] += 1
        email = email or f"{role}{counter['n']}@example.com"
        result = auth_service.sign_up(session, email, PASSWORD, first_name, last_name, plan_type, role=role)
        return session.get(User, result["id"])

    return _make


def csrf(client, path="/signin"):
    client.get(path)
    return client.cookies.get("sd_csrf")


def sign_in(client, email, password=PASSWORD):
    token = csrf(client)
    return client.post(
        "/signin",
        data={"csrf_token": token, "email": email, "password": password},
        follow_redirects=False,
    )


def staff_sign_in(client, path, email, mpin, password=PASSWORD):
    token = csrf(client, path)
    return client.post(
        path,
        data={"csrf_token": token, "email": email, "password": password, "mpin": mpin},
        follow_redirects=False,
    )
