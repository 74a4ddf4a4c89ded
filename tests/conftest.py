import importlib
import os
from pathlib import Path

import pytest

# keep the app engine off the working directory; set before stratus.db is imported
os.environ.setdefault("STRATUS_DATABASE_URL", "sqlite://")

from starlette.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session
from typer.testing import CliRunner

from stratus.db import enable_sqlite_foreign_keys, get_session, init_db
from stratus.main import app

from tests.fakes import NETWORK_TEMPLATE, COMPUTE_TEMPLATE, write_project


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    init_db(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture()
def cli_runner(tmp_path, monkeypatch):
    db_path = tmp_path / "test_cli.db"
    monkeypatch.setenv("STRATUS_DATABASE_URL", f"sqlite:///{db_path}")
    for name in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION", "AWS_DEFAULT_REGION",
                 "STRATUS_TEMPLATE_BUCKET"):
        monkeypatch.delenv(name, raising=False)

    import stratus.db as db

    importlib.reload(db)
    init_db(db.engine)

    import stratus.cli as cli

    importlib.reload(cli)

    return CliRunner(), cli.app


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_session] = override_get_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def project_dir(tmp_path) -> Path:
    """Project with a network and a compute stack in all three environments."""
    return write_project(
        tmp_path / "acme",
        manifest={
            "project": "acme",
            "environments": {
                "development": {"parameters": {"InstanceType": "t3.micro"}},
                "staging": {},
                "production": {"parameters": {"InstanceType": "m5.large"}},
            },
            "stacks": [
                {"name": "network", "template": "network.yaml"},
                {
                    "name": "compute",
                    "template": "compute.yaml",
                    "depends_on": ["network"],
                    "parameters": {"VpcId": "${network.VpcId}"},
                },
            ],
        },
        templates={"network.yaml": NETWORK_TEMPLATE, "compute.yaml": COMPUTE_TEMPLATE},
    )
