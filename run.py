"""Entry-point for the LMS assessment and media services."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from lms.bootstrap import BootstrapError, initialize_app
from lms.config import AppConfig
from lms.errors import LMSError
from lms.logging_utils import build_log_handlers, configure_logging
from lms.processing.assembly import ChunkAssembler
from lms.services.attempts import AttemptService
from lms.services.blob_storage import LocalBlobStorage
from lms.services.media_repository import MediaRepository
from lms.services.media_tools import FFmpegMediaTool
from lms.services.storage import AssessmentRepository, SQLiteCourseDirectory
from lms.services.tasks import WorkQueue
from lms.web import create_app


LOGGER = logging.getLogger("lms.cli")


cli = typer.Typer(add_completion=False, help="LMS assessment and media management commands")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

config_option = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to a JSON configuration file (defaults to config/default.json).",
    exists=True,
    dir_okay=False,
)


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_log_handlers(storage_root))


def _load(config_path: Optional[Path]) -> AppConfig:
    try:
        app_config = initialize_app(config_path)
    except BootstrapError as error:
        typer.echo(f"Initialization failed: {error}", err=True)
        raise typer.Exit(code=1) from error
    _prepare_logging(app_config.storage_root)
    return app_config


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, config_path=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    config_path: Optional[Path] = config_option,
) -> None:
    """Run the HTTP API."""

    app_config = _load(config_path)
    app = create_app(app_config)

    server_config = uvicorn.Config(app, host=host, port=port, log_config=None)
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving LMS API on http://%s:%s", host, port)
    server.run()


@cli.command("init")
def init(config_path: Optional[Path] = config_option) -> None:
    """Create the storage directories and the database schema."""

    app_config = _load(config_path)
    typer.echo(f"Storage root: {app_config.storage_root}")
    typer.echo(f"Database: {app_config.database_file}")


@cli.command("sweep-attempts")
def sweep_attempts(config_path: Optional[Path] = config_option) -> None:
    """Time out every in-progress attempt whose time limit has elapsed."""

    app_config = _load(config_path)
    service = AttemptService(AssessmentRepository(app_config), SQLiteCourseDirectory(app_config))
    expired = service.sweep_expired()
    if expired:
        typer.echo(f"Timed out {len(expired)} attempt(s): {', '.join(str(item) for item in expired)}")
    else:
        typer.echo("No expired attempts found.")


@cli.command("assemble")
def assemble(
    session_id: str = typer.Argument(..., help="Upload session to assemble"),
    uploaded_by: Optional[int] = typer.Option(None, help="User id recorded as the uploader"),
    config_path: Optional[Path] = config_option,
) -> None:
    """Assemble a complete upload session and wait for its renditions."""

    app_config = _load(config_path)
    repository = MediaRepository(app_config)
    queue = WorkQueue(max_workers=app_config.worker_count)
    assembler = ChunkAssembler(
        repository,
        LocalBlobStorage(app_config.storage_root),
        FFmpegMediaTool(
            ffmpeg_binary=app_config.ffmpeg_binary,
            ffprobe_binary=app_config.ffprobe_binary,
            transcode_timeout=float(app_config.transcode_timeout_seconds),
        ),
        queue,
        scratch_root=app_config.assembly_root,
        quality_tiers=app_config.quality_tiers,
        transcode_tries=app_config.transcode_tries,
        transcode_timeout=float(app_config.transcode_timeout_seconds),
    )
    try:
        video = assembler.assemble(session_id, uploaded_by)
        typer.echo(f"Assembled video {video.id}; processing renditions...")
        queue.join()
    except LMSError as error:
        typer.echo(f"Assembly failed: {error.message}", err=True)
        raise typer.Exit(code=1) from error
    finally:
        queue.shutdown()

    final = repository.get_video(video.id)
    if final is None:
        raise typer.Exit(code=1)
    typer.echo(f"Video {final.id} finished with status {final.status}")
    for quality in final.qualities:
        typer.echo(f"  {quality.quality}: {quality.status}")
    if final.status != "completed":
        raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
