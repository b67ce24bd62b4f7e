import os
import tempfile
import uuid
from pathlib import Path

# Point the service at a throwaway database before app.server reads its config.
_TMP_DIR = tempfile.mkdtemp(prefix="teamboard-tests-")
os.environ["TEAMBOARD_DB_PATH"] = str(Path(_TMP_DIR) / "teamboard-test.db")
os.environ.setdefault("TEAMBOARD_SECRET_KEY", "test-secret")

import pytest

from app.flask_app import flask_app
from app.server import add_project_member, create_project, create_user, db_connect, ensure_bootstrap


@pytest.fixture(scope="session", autouse=True)
def bootstrap_db():
    ensure_bootstrap()


@pytest.fixture
def conn():
    connection = db_connect()
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def seed():
    """An owner, a collaborator, an outsider and a project shared by the first two."""
    tag = uuid.uuid4().hex[:8]
    connection = db_connect()
    try:
        owner_id, _ = create_user(connection, f"owner-{tag}@example.com", "Olivia Owner")
        collab_id, _ = create_user(connection, f"collab-{tag}@example.com", "Casey Collaborator")
        outsider_id, _ = create_user(connection, f"outsider-{tag}@example.com", "Oscar Outsider")
        project, _ = create_project(connection, owner_id, f"Project {tag}")
        add_project_member(connection, owner_id, int(project["id"]), f"collab-{tag}@example.com")
        connection.commit()
    finally:
        connection.close()
    return {
        "owner_id": owner_id,
        "collab_id": collab_id,
        "outsider_id": outsider_id,
        "owner_email": f"owner-{tag}@example.com",
        "collab_email": f"collab-{tag}@example.com",
        "outsider_email": f"outsider-{tag}@example.com",
        "project_id": int(project["id"]),
    }


@pytest.fixture
def client_for():
    """Build a Flask test client already signed in as the given email."""

    def build(email):
        client = flask_app.test_client()
        resp = client.post("/api/session", json={"email": email})
        assert resp.status_code == 200, resp.get_data(as_text=True)
        return client

    return build
