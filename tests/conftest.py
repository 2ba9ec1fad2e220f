import io
import json
import os

import mongomock
import pytest

from bforce_store import create_app
from bforce_store.storage import LocalObjectStore, ObjectStoreError


class RecordingStore(LocalObjectStore):
    """Local store that remembers deletes and can be told to fail."""

    def __init__(self, root):
        super().__init__(str(root))
        self.deleted = []
        self.uploaded = []
        self.fail_deletes = set()
        self.fail_uploads_after = None

    def upload(self, image_file, folder):
        if self.fail_uploads_after is not None and len(self.uploaded) >= self.fail_uploads_after:
            raise ObjectStoreError("upload refused")
        image = super().upload(image_file, folder)
        self.uploaded.append(image["key"])
        return image

    def delete(self, key):
        self.deleted.append(key)
        if key in self.fail_deletes:
            raise ObjectStoreError("delete refused")
        super().delete(key)

    def exists(self, key):
        return os.path.exists(self.path_for(key))


@pytest.fixture
def db():
    return mongomock.MongoClient().bforce_test


@pytest.fixture
def store(tmp_path):
    return RecordingStore(tmp_path / "uploads")


@pytest.fixture
def app(db, store):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "ASSET_DELETION_MODE": "inline",
            "INSTAGRAM_TOKEN": "test-token",
        },
        db=db,
        object_store=store,
    )
    yield app
    app.extensions["bforce_store"]["janitor"].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    client.post("/api/auth/signup", json={"email": "admin@bforce.test", "password": "s3cret!"})
    response = client.post("/api/auth/login", json={"email": "admin@bforce.test", "password": "s3cret!"})
    assert response.status_code == 200
    return client


def image_file(name="front.png", content=b"\x89PNG fake image"):
    return (io.BytesIO(content), name)


def tshirt_form(**overrides):
    form = {
        "name": "Classic Tee",
        "sku": "BF-TEE-001",
        "price": "24.99",
        "description": "Heavyweight cotton tee",
        "material": "Cotton",
        "collectionType": "Basic",
        "category": json.dumps({"main": "T-Shirts", "sub": "Plain T-Shirts"}),
        "variants": json.dumps(
            [
                {"colorName": "Burgundy", "colorHex": "#800020", "stock": [{"size": "M", "quantityInStock": 4}]},
                {"colorName": "Black", "stock": [{"size": "L"}]},
            ]
        ),
    }
    form.update(overrides)
    return form
