import itertools
import os

# Must be set before config is imported
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SEED_ON_STARTUP", "0")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import MemoryStorage, get_storage  # noqa: E402
from schemas import Product, User  # noqa: E402

_emails = itertools.count(1)


@pytest.fixture()
def storage():
    return MemoryStorage()


@pytest.fixture()
def client(storage):
    from main import app

    app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def make_product(storage):
    def _make(**overrides):
        fields = {
            "name": "Salmon Nigiri",
            "description": "Fresh salmon over rice",
            "price": 500,
            "category": "Sushi",
            "stock": 10,
        }
        fields.update(overrides)
        return storage.insert("product", Product(**fields).to_document())

    return _make


@pytest.fixture()
def make_user(storage):
    def _make(**overrides):
        fields = {"name": "Aiko Tanaka", "email": f"guest{next(_emails)}@example.com"}
        fields.update(overrides)
        return storage.insert("user", User(**fields).to_document())

    return _make


@pytest.fixture()
def admin_headers(make_user):
    from main import create_access_token

    admin_id = make_user(name="Admin", is_admin=True)
    return {"Authorization": f"Bearer {create_access_token({'sub': admin_id})}"}


@pytest.fixture()
def user_headers(make_user):
    from main import create_access_token

    user_id = make_user()
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}
