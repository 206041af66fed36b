"""Entry-point for the Sprach Tutor backend."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from tutor.bootstrap import initialize_app
from tutor.errors import TutorError
from tutor.logging_utils import build_log_handlers, configure_logging
from tutor.processing.mixing import build_mixer
from tutor.services.auth import DEFAULT_CEFR_LEVEL, TokenVerifier
from tutor.services.blobs import LocalBlobStore
from tutor.services.sessions import normalize_level
from tutor.services.storage import SessionRepository
from tutor.ui.modern import SessionsUI
from tutor.web import create_app


LOGGER = logging.getLogger("sprach_tutor.cli")


cli = typer.Typer(add_completion=False, help="Sprach Tutor management commands")


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_log_handlers(storage_root))


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="TUTOR_ROOT_PATH",
    ),
) -> None:
    """Run the session recording API."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = SessionRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Sprach Tutor on http://%s:%s%s", host, port, normalized_root or "/")
    server.run()


@cli.command()
def mix(
    session_id: str = typer.Argument(..., help="Session to mix"),
    user_id: str = typer.Argument(..., help="Owner of the session"),
    mark_failed: bool = typer.Option(
        False,
        "--mark-failed",
        help="Mark the session failed when its tracks never become ready.",
    ),
) -> None:
    """Run the mixer once for an ended session and report the outcome."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = SessionRepository(config)
    blob_store = LocalBlobStore(config.blob_root)
    mixer = build_mixer(config, repository, blob_store)

    try:
        result = mixer.run(session_id, user_id)
    except TutorError as error:
        typer.echo(f"Mix failed: {error}", err=True)
        if mark_failed:
            mixer.mark_failed(session_id, user_id, str(error))
            typer.echo(f"Session {session_id} marked failed.", err=True)
        raise typer.Exit(code=1) from error

    if result.skipped:
        typer.echo(f"Mix already present: {result.mixed_blob}")
    else:
        typer.echo(f"Mix published: {result.mixed_blob} ({result.duration_ms:.0f} ms)")
        if result.transcoded:
            typer.echo("  User track was transcoded before mixing.")


@cli.command()
def sessions(
    user_id: str = typer.Argument(..., help="User whose sessions should be listed"),
    limit: Optional[int] = typer.Option(None, min=1, help="Show at most this many sessions"),
) -> None:
    """Render a table of a user's sessions, newest first."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = SessionRepository(config)
    SessionsUI(repository, user_id, limit=limit).run()


@cli.command("issue-token")
def issue_token(
    user_id: str = typer.Argument(..., help="Value of the userId claim"),
    role: str = typer.Option("student", help="Value of the role claim"),
    cefr: str = typer.Option(DEFAULT_CEFR_LEVEL, help="CEFR level claim"),
    hours: float = typer.Option(24.0, min=0.01, help="Token lifetime in hours"),
) -> None:
    """Print a signed development token for *user_id*."""

    config = initialize_app()
    try:
        level = normalize_level(cefr)
    except TutorError as error:
        raise typer.BadParameter(str(error), param_hint="--cefr") from error
    verifier = TokenVerifier(config.jwt_secret)
    typer.echo(verifier.issue(user_id, role=role, cefr=level, lifetime=timedelta(hours=hours)))


if __name__ == "__main__":
    cli()
