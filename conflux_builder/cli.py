"""Thin CLI wrapper for conflux_builder.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import time
from typing import Annotated, Any

import typer
from rich.console import Console
from sqlalchemy.orm import Session, sessionmaker

from conflux_builder import __version__
from conflux_builder.config import configure_logging, get_settings, print_settings_json

app = typer.Typer(
    name="cfx-builder",
    help="Conflux Builder - request custom conflux binaries built on GitHub Actions",
    no_args_is_help=True,
)
console = Console()

STATUS_COLORS = {
    "completed": "green",
    "build_success": "cyan",
    "failed": "red",
    "cancelled": "red",
    "in_progress": "blue",
    "pending": "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"conflux-builder version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Conflux Builder - request custom conflux binaries built on GitHub Actions."""
    configure_logging(get_settings())


def _session_factory() -> sessionmaker[Session]:
    from conflux_builder.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


def _print_json(data: Any) -> None:
    """Print JSON without markup parsing or line wrapping."""
    text = data if isinstance(data, str) else json.dumps(data, indent=2)
    console.print(text, soft_wrap=True, markup=False, highlight=False)


def _print_build(build: dict[str, Any]) -> None:
    color = STATUS_COLORS.get(build["status"], "white")
    console.print(f"  [{color}]Build #{build['id']}[/{color}]")
    console.print(f"    Version: {build['version_tag']} ({build['commit_sha'][:7]})")
    target = f"{build['os']}/{build['arch']}"
    if build["glibc_version"]:
        target += f" glibc {build['glibc_version']}, OpenSSL {build['openssl_version']}"
    console.print(f"    Target: {target}")
    console.print(
        f"    Static OpenSSL: {build['static_openssl']}  "
        f"Portable: {build['compatibility_mode']}"
    )
    console.print(f"    Status: {build['status']}")
    if build["external_job_id"]:
        console.print(f"    Workflow run: {build['external_job_id']}")
    if build["download_url"]:
        console.print(f"    Download: {build['download_url']}")
    if build["error_message"]:
        console.print(f"    Error: {build['error_message']}")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        _print_json(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Storage:[/bold]")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]GitHub:[/bold]")
        console.print(f"  API URL:             {settings.github_api_url}")
        console.print(
            f"  Builder repository:  {settings.builder_owner}/{settings.builder_repo}"
        )
        console.print(
            f"  Source repository:   {settings.source_owner}/{settings.source_repo}"
        )
        console.print(f"  Dispatch ref:        {settings.dispatch_ref}")
        console.print(
            f"  Token configured:    {'yes' if settings.github_token else 'no'}"
        )
        console.print(
            f"  Webhook secret:      {'yes' if settings.webhook_secret else 'no'}"
        )
        console.print()
        console.print("[bold]Polling:[/bold]")
        console.print(f"  Enabled:             {settings.poll_enabled}")
        console.print(f"  Interval:            {settings.poll_interval}s")
        console.print(f"  API retries:         {settings.poll_api_retries}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Windows:             {settings.windows_timeout}")
        console.print(f"  Linux:               {settings.linux_timeout}")
        console.print(f"  macOS:               {settings.macos_timeout}")
        console.print(f"  HTTP:                {settings.http_timeout}")


builds_app = typer.Typer(help="Request and track builds")
app.add_typer(builds_app, name="builds")


@builds_app.command("submit")
def builds_submit(
    version_tag: Annotated[str, typer.Argument(help="Source tag to build, e.g. v2.4.0")],
    os_name: Annotated[
        str,
        typer.Option("--os", "-o", help="Target OS: linux, windows or macos"),
    ],
    arch: Annotated[
        str,
        typer.Option("--arch", "-a", help="Target arch: x86_64 or aarch64"),
    ],
    commit_sha: Annotated[
        str | None,
        typer.Option("--commit", "-c", help="Commit to build (resolved from tag if omitted)"),
    ] = None,
    glibc_version: Annotated[
        str | None,
        typer.Option("--glibc", help="glibc version (linux only)"),
    ] = None,
    openssl_version: Annotated[
        str | None,
        typer.Option("--openssl", help="OpenSSL major version (linux only)"),
    ] = None,
    static_openssl: Annotated[
        bool,
        typer.Option("--static-openssl/--dynamic-openssl", help="OpenSSL linking"),
    ] = True,
    compatibility_mode: Annotated[
        bool,
        typer.Option("--portable", help="Build a portable binary"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Submit a build request.

    Returns the existing build when an equivalent one was requested before.
    """
    from conflux_builder.criteria.schema import CriteriaValidationError
    from conflux_builder.db import get_session
    from conflux_builder.github.client import ExternalApiError, NotFoundError
    from conflux_builder.orchestrator import Orchestrator

    raw: dict[str, Any] = {
        "version_tag": version_tag,
        "os": os_name,
        "arch": arch,
        "commit_sha": commit_sha,
        "glibc_version": glibc_version,
        "openssl_version": openssl_version,
        "static_openssl": static_openssl,
        "compatibility_mode": compatibility_mode,
    }

    factory = _session_factory()
    orchestrator = Orchestrator.from_settings(get_settings())
    try:
        with get_session(factory) as session:
            result = orchestrator.engine.submit(session, raw)
            build = result.build.to_dict()
    except CriteriaValidationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    except NotFoundError as e:
        console.print(f"[red]Not found: {e}[/red]")
        raise typer.Exit(code=1) from None
    except ExternalApiError as e:
        console.print(f"[red]GitHub error: {e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        orchestrator.close()

    if json_output:
        _print_json({"outcome": result.outcome.value, "build": build})
    else:
        console.print(f"[bold]Outcome: {result.outcome.value}[/bold]")
        _print_build(build)

    if build["status"] == "failed":
        raise typer.Exit(code=1)


@builds_app.command("status")
def builds_status(
    build_id: Annotated[int, typer.Argument(help="Build ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a build record."""
    from conflux_builder.builds.registry import BuildNotFoundError, get_build

    factory = _session_factory()
    with factory() as session:
        try:
            build = get_build(session, build_id).to_dict()
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None

    if json_output:
        _print_json(build)
    else:
        _print_build(build)


@builds_app.command("list")
def builds_list(
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter by status"),
    ] = None,
    version_tag: Annotated[
        str | None,
        typer.Option("--version", "-v", help="Filter by version tag"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from conflux_builder.builds.registry import list_builds
    from conflux_builder.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print(f"Valid values: {', '.join(s.value for s in BuildStatus)}")
            raise typer.Exit(code=1) from None

    factory = _session_factory()
    with factory() as session:
        builds = [
            b.to_dict()
            for b in list_builds(
                session, status=status_filter, version_tag=version_tag, limit=limit
            )
        ]

    if not builds:
        if json_output:
            _print_json([])
        else:
            console.print("[yellow]No build records found[/yellow]")
        return

    if json_output:
        _print_json(builds)
    else:
        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            _print_build(b)
            console.print()


@builds_app.command("retry")
def builds_retry(
    build_id: Annotated[int, typer.Argument(help="Build ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Retry a failed or cancelled build."""
    from conflux_builder.builds.engine import RetryNotAllowedError
    from conflux_builder.builds.registry import BuildNotFoundError
    from conflux_builder.db import get_session
    from conflux_builder.orchestrator import Orchestrator

    factory = _session_factory()
    orchestrator = Orchestrator.from_settings(get_settings())
    try:
        with get_session(factory) as session:
            result = orchestrator.engine.retry(session, build_id)
            build = result.build.to_dict()
    except BuildNotFoundError:
        console.print(f"[red]Build not found: {build_id}[/red]")
        raise typer.Exit(code=1) from None
    except RetryNotAllowedError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        orchestrator.close()

    if json_output:
        _print_json({"outcome": result.outcome.value, "build": build})
    else:
        console.print(f"[bold]Outcome: {result.outcome.value}[/bold]")
        _print_build(build)

    if build["status"] == "failed":
        raise typer.Exit(code=1)


@app.command()
def poll(
    watch: Annotated[
        bool,
        typer.Option("--watch", "-w", help="Keep polling until interrupted"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check active builds against GitHub.

    Runs a single sweep by default; --watch keeps sweeping every
    poll interval until interrupted.
    """
    from conflux_builder.builds.poller import BuildPoller
    from conflux_builder.orchestrator import Orchestrator

    settings = get_settings()
    factory = _session_factory()
    orchestrator = Orchestrator.from_settings(settings)
    poller = BuildPoller(orchestrator.engine, factory, interval=settings.poll_interval)
    try:
        if watch:
            console.print(
                f"[blue]Polling every {settings.poll_interval}s, Ctrl-C to stop[/blue]"
            )
            poller.start()
            try:
                while poller.running:
                    time.sleep(1)
            except KeyboardInterrupt:
                pass
            finally:
                poller.stop()
            return

        report = poller.run_once()
    finally:
        orchestrator.close()

    if json_output:
        _print_json(
            {
                "checked": report.checked,
                "transitions": {str(k): v for k, v in report.transitions.items()},
                "failed": report.failed_build_ids,
            }
        )
    else:
        console.print(f"[bold]Checked {report.checked} active build(s)[/bold]")
        for build_id, status in report.transitions.items():
            color = STATUS_COLORS.get(status, "white")
            console.print(f"  Build #{build_id} -> [{color}]{status}[/{color}]")
        for build_id in report.failed_build_ids:
            console.print(f"  [red]Build #{build_id} could not be polled[/red]")


releases_app = typer.Typer(help="Inspect builder releases")
app.add_typer(releases_app, name="releases")


@releases_app.command("show")
def releases_show(
    version_tag: Annotated[str, typer.Argument(help="Source tag, e.g. v2.4.0")],
    all_assets: Annotated[
        bool,
        typer.Option("--all", help="Include attestation assets"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the builder release for a version."""
    from conflux_builder.builds.matcher import describe_release
    from conflux_builder.github.client import ExternalApiError, NotFoundError
    from conflux_builder.orchestrator import Orchestrator

    orchestrator = Orchestrator.from_settings(get_settings())
    try:
        release = describe_release(
            orchestrator.releases.get_release_for_version(version_tag)
        )
    except NotFoundError as e:
        console.print(f"[red]Not found: {e}[/red]")
        raise typer.Exit(code=1) from None
    except ExternalApiError as e:
        console.print(f"[red]GitHub error: {e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        orchestrator.close()

    if not all_assets:
        release["assets"] = [a for a in release["assets"] if not a["is_attestation"]]

    if json_output:
        _print_json(release)
        return

    console.print(f"[bold]{release['name'] or release['tag_name']}[/bold]")
    console.print(f"  Tag: {release['tag_name']}")
    if release["published_at"]:
        console.print(f"  Published: {release['published_at']}")
    console.print(f"  Assets: {len(release['assets'])}")
    for asset in release["assets"]:
        flags = " portable" if asset["is_portable"] else ""
        console.print(
            f"    [green]{asset['name']}[/green] "
            f"({asset['os'] or '?'} {asset['arch'] or '?'}{flags}, {asset['size']})"
        )


tags_app = typer.Typer(help="Mirror source repository tags")
app.add_typer(tags_app, name="tags")


@tags_app.command("sync")
def tags_sync(
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-l", help="Number of recent tags to fetch"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Fetch the latest source tags into the local database."""
    from conflux_builder.db import get_session
    from conflux_builder.github.client import ExternalApiError
    from conflux_builder.orchestrator import Orchestrator
    from conflux_builder.tags.service import sync_tags

    settings = get_settings()
    factory = _session_factory()
    orchestrator = Orchestrator.from_settings(settings)
    try:
        with get_session(factory) as session:
            tags = [
                t.to_dict()
                for t in sync_tags(
                    session, orchestrator.client, limit=limit or settings.tags_limit
                )
            ]
    except ExternalApiError as e:
        console.print(f"[red]GitHub error: {e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        orchestrator.close()

    if json_output:
        _print_json(tags)
    else:
        console.print(f"[bold]Synced {len(tags)} tag(s):[/bold]")
        for t in tags:
            console.print(f"  [green]{t['name']}[/green] {t['commit_sha'][:7]}")


@tags_app.command("list")
def tags_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List tags already synced."""
    from conflux_builder.tags.service import list_tags

    factory = _session_factory()
    with factory() as session:
        tags = [t.to_dict() for t in list_tags(session)]

    if json_output:
        _print_json(tags)
    elif not tags:
        console.print("[yellow]No tags synced yet; run 'tags sync'[/yellow]")
    else:
        for t in tags:
            console.print(f"  [green]{t['name']}[/green] {t['commit_sha'][:7]}")


if __name__ == "__main__":
    app()
