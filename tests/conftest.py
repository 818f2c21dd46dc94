from __future__ import annotations

import os
from typing import Callable, Iterator
from uuid import uuid4

import boto3
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

from mdpublish.config import settings
from mdpublish.db.session import build_engine, build_session_factory
from mdpublish.dependencies.db import get_db
from mdpublish.main import app
from mdpublish.models import Base, MemberRole, Project, ProjectMember, User
from mdpublish.workers.autosave import AutosaveScheduler


@pytest.fixture()
def engine() -> Iterator[Engine]:
    """In-memory SQLite shared by every session of one test."""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def db(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db: Session) -> Callable[..., User]:
    def _make_user(email: str | None = None, full_name: str | None = None) -> User:
        user = User(email=email or f"user+{uuid4().hex[:8]}@example.com", full_name=full_name)
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture()
def owner(make_user) -> User:
    return make_user("owner@example.com", "Olive Owner")


@pytest.fixture()
def editor(make_user) -> User:
    return make_user("editor@example.com", "Eddie Editor")


@pytest.fixture()
def viewer(make_user) -> User:
    return make_user("viewer@example.com", "Vera Viewer")


@pytest.fixture()
def outsider(make_user) -> User:
    return make_user("outsider@example.com")


@pytest.fixture()
def project(db: Session, owner: User, editor: User, viewer: User) -> Project:
    """A project with one member per role."""
    project = Project(name="Handbook", slug="handbook", created_by=owner.id)
    db.add(project)
    db.flush()
    db.add_all(
        [
            ProjectMember(project_id=project.id, user_id=owner.id, role=MemberRole.OWNER),
            ProjectMember(project_id=project.id, user_id=editor.id, role=MemberRole.EDITOR, invited_by=owner.id),
            ProjectMember(project_id=project.id, user_id=viewer.id, role=MemberRole.VIEWER, invited_by=owner.id),
        ]
    )
    db.commit()
    return project


@pytest.fixture()
def mock_s3() -> Iterator:
    from moto import mock_aws

    with mock_aws():
        s3 = boto3.client("s3", region_name=settings.aws.region)
        s3.create_bucket(Bucket=settings.aws.assets_bucket)
        s3.create_bucket(Bucket=settings.aws.sites_bucket)
        previous_endpoint = settings.aws.s3_endpoint_url
        settings.aws.s3_endpoint_url = None
        try:
            yield s3
        finally:
            settings.aws.s3_endpoint_url = previous_endpoint


@pytest.fixture()
def client(session_factory: sessionmaker[Session]) -> Iterator[TestClient]:
    """TestClient bound to the per-test database."""

    def _get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.state.autosave = AutosaveScheduler(delay_seconds=60, session_factory=session_factory)
    try:
        with TestClient(app) as _client:
            yield _client
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def as_user() -> Callable[[User], dict[str, str]]:
    """Headers the identity provider would attach for ``user``."""

    def _headers(user: User) -> dict[str, str]:
        return {settings.identity_header: str(user.id)}

    return _headers
