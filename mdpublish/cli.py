from __future__ import annotations

import uuid

import typer
from sqlalchemy import func, select

from .db.session import SessionLocal
from .models import User
from .services.errors import PublishingError
from .services.projects import ProjectService
from .services.publish import PublishPipeline
from .services.storage import get_sites_storage

app = typer.Typer(help="mdpublish administrative CLI")


def _user_by_email(db, email: str) -> User:
    user = db.execute(select(User).where(func.lower(User.email) == email.strip().lower())).scalar_one_or_none()
    if user is None:
        typer.echo(f"No user with email {email}", err=True)
        raise typer.Exit(code=1)
    return user


@app.command()
def create_user(
    email: str = typer.Argument(..., help="User email"),
    full_name: str = typer.Option("", "--full-name", "-f", help="Optional full name"),
) -> None:
    """Register an identity-provider profile so it can be invited to projects."""
    db = SessionLocal()
    try:
        normalized = email.strip().lower()
        user = db.execute(select(User).where(func.lower(User.email) == normalized)).scalar_one_or_none()
        if user is None:
            user = User(email=normalized, full_name=full_name or None)
            db.add(user)
        elif full_name:
            user.full_name = full_name
        db.commit()
        typer.echo(f"User {user.email} ({user.id})")
    finally:
        db.close()


@app.command()
def create_project(
    owner_email: str = typer.Argument(..., help="Email of the owning user"),
    name: str = typer.Argument(..., help="Project name"),
    description: str = typer.Option("", "--description", "-d"),
) -> None:
    """Create a project owned by an existing user."""
    db = SessionLocal()
    try:
        owner = _user_by_email(db, owner_email)
        try:
            project = ProjectService(db).create_project(owner.id, name, description or None)
        except PublishingError as exc:
            typer.echo(exc.message, err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Created project {project.name} slug={project.slug} ({project.id})")
    finally:
        db.close()


@app.command()
def publish(
    project_id: str = typer.Argument(..., help="Project id"),
    actor_email: str = typer.Argument(..., help="Email of an editor or owner"),
    template: str = typer.Option("default", "--template", "-t", show_default=True),
) -> None:
    """Publish a project's published documents as a static site bundle."""
    db = SessionLocal()
    try:
        actor = _user_by_email(db, actor_email)
        pipeline = PublishPipeline(db, get_sites_storage())
        try:
            result = ProjectService(db).publish(uuid.UUID(project_id), actor.id, pipeline, template=template)
        except PublishingError as exc:
            typer.echo(exc.message, err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Published {result.document_count} documents as {result.version}: {result.preview_url}")
    finally:
        db.close()


if __name__ == "__main__":
    app()
