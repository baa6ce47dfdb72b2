"""Time capsule CLI - leave a message for later."""

import asyncio
import logging
import math
import mimetypes
import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, NoReturn

import httpx
import typer

from tcap.client import ApiCapsuleSource, CapsuleClient, ViewSession
from tcap.config import DEFAULT_API_URL
from tcap.errors import (
    AlreadyExpired,
    CapsuleError,
    CapsuleNotFound,
    NotYetAvailable,
    StoreUnavailable,
)
from tcap.lifecycle import (
    DETAIL_TICK_INTERVAL,
    AvailabilityPoller,
    CountdownDriver,
    Listing,
    view_duration_from_parts,
)
from tcap.storage.models import CapsuleType

# Configure logging for long-running commands
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%H:%M:%S",
)

# Icons for capsule types
TYPE_ICONS: dict[str, str] = {
    "text": "📝",
    "image": "🖼️",
    "video": "🎥",
}

app = typer.Typer(
    name="tcap",
    help="Leave messages and media that unlock later and vanish after viewing.",
    add_completion=False,
)


def get_api_url() -> str:
    """Get the API base URL from environment or default."""
    return os.environ.get("TCAP_API_URL", DEFAULT_API_URL)


# ============== Formatting ==============


def format_duration(seconds: float) -> str:
    """Format remaining viewing time.

    Under a minute shows seconds only, under an hour minutes and seconds.
    """
    seconds = max(0.0, seconds)
    if seconds < 60:
        return f"{math.floor(seconds)}s"
    if seconds < 3600:
        return f"{math.floor(seconds / 60)}m {math.floor(seconds % 60)}s"
    hours = math.floor(seconds / 3600)
    minutes = math.floor((seconds % 3600) / 60)
    return f"{hours}h {minutes}m {math.floor(seconds % 60)}s"


def format_time_until_available(seconds: float) -> str:
    """Format the wait until a capsule unlocks, rounding up."""
    if seconds <= 60:
        return f"{math.ceil(max(0.0, seconds))}s"
    days = math.floor(seconds / 86400)
    minutes = math.ceil((seconds % 86400) / 60)
    if days > 0:
        return f"{days}d {minutes}m"
    return f"{minutes}m"


def parse_duration(text: str) -> float | None:
    """Parse a duration like '90', '45s', '10m' or '1h30m' into seconds.

    Returns None if the string is not a duration.
    """
    text = text.strip().lower()
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return float(text)

    match = re.fullmatch(r"(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?", text)
    if not text or not match:
        return None
    hours, minutes, secs = (int(group or 0) for group in match.groups())
    return float(view_duration_from_parts(hours, minutes, secs))


def format_capsule(capsule: dict[str, Any]) -> str:
    """Format one listing entry for display."""
    icon = TYPE_ICONS.get(capsule.get("type", ""), "📦")
    name = typer.style(capsule.get("name", ""), bold=True)
    short_id = typer.style(str(capsule.get("id", ""))[:8], dim=True)

    if capsule.get("state") == "opened":
        status = typer.style(
            f"{format_duration(capsule.get('remaining_time', 0))} remaining",
            fg=typer.colors.RED,
        )
    elif capsule.get("available_in", 0) > 0:
        status = typer.style(
            f"Available in {format_time_until_available(capsule['available_in'])}",
            fg=typer.colors.YELLOW,
        )
    else:
        status = typer.style("Ready to open", fg=typer.colors.GREEN)

    return f"{icon} {name} {short_id}  {status}"


# ============== Output helpers ==============


def _success(message: str) -> None:
    typer.echo(typer.style("✓ ", fg=typer.colors.GREEN, bold=True) + message)


def _fail(message: str) -> NoReturn:
    typer.echo(typer.style("✗ ", fg=typer.colors.RED, bold=True) + message, err=True)
    sys.exit(1)


def _error_detail(response: httpx.Response) -> str:
    try:
        error_data = response.json()
    except ValueError:
        return response.text
    if isinstance(error_data, dict):
        return str(error_data.get("detail", response.text))
    return response.text


@contextmanager
def _api_errors(api_url: str) -> Iterator[None]:
    """Turn connection problems into a friendly error and exit code 1."""
    try:
        yield
    except httpx.ConnectError:
        _fail(f"Cannot connect to API at {api_url}. Is the server running?")
    except httpx.TimeoutException:
        _fail("Request timed out. Please try again.")


# ============== Commands ==============


@app.command()
def create(
    content: Annotated[
        str | None,
        typer.Argument(help="Text to seal in the capsule"),
    ] = None,
    file: Annotated[
        Path | None,
        typer.Option("-f", "--file", help="Image or video to seal instead of text"),
    ] = None,
    name: Annotated[
        str | None,
        typer.Option("-n", "--name", help="Capsule name"),
    ] = None,
    unlock_in: Annotated[
        str | None,
        typer.Option("--in", help="Delay before the capsule unlocks (e.g. 10m, 2h)"),
    ] = None,
    view: Annotated[
        str,
        typer.Option("--view", help="Viewing time once opened (e.g. 15s, 1m30s)"),
    ] = "15s",
) -> None:
    """Create a time capsule.

    Examples:
        tcap create "open me tomorrow" --in 12h
        tcap create --file photo.jpg --view 30s
    """
    if (content is None) == (file is None):
        _fail("Provide either text content or --file, not both.")

    view_duration = parse_duration(view)
    if view_duration is None:
        _fail(f"Invalid view duration: {view}")

    available_at: datetime | None = None
    if unlock_in is not None:
        delay = parse_duration(unlock_in)
        if delay is None:
            _fail(f"Invalid unlock delay: {unlock_in}")
        available_at = datetime.now(UTC) + timedelta(seconds=delay)

    api_url = get_api_url()
    with _api_errors(api_url), httpx.Client(timeout=60.0) as client:
        if file is not None:
            if not file.is_file():
                _fail(f"File not found: {file}")
            content_type = mimetypes.guess_type(file.name)[0] or "application/octet-stream"
            form: dict[str, str] = {"view_duration": str(view_duration)}
            if name:
                form["name"] = name
            if available_at is not None:
                form["available_at"] = available_at.isoformat()
            response = client.post(
                f"{api_url}/api/capsules/upload",
                data=form,
                files={"file": (file.name, file.read_bytes(), content_type)},
            )
        else:
            payload: dict[str, Any] = {"content": content, "view_duration": view_duration}
            if name:
                payload["name"] = name
            if available_at is not None:
                payload["available_at"] = available_at.isoformat()
            response = client.post(f"{api_url}/api/capsules", json=payload)

    if response.status_code != 201:
        _fail(f"Failed to create capsule: {_error_detail(response)}")

    data = response.json()
    _success(f"Sealed {data.get('name', 'capsule')}! Capsule ID: {data.get('id', 'unknown')}")
    if data.get("available_in", 0) > 0:
        typer.echo(f"  Unlocks in {format_time_until_available(data['available_in'])}")


@app.command("list")
def list_capsules() -> None:
    """List capsules that can still be viewed."""
    api_url = get_api_url()
    with _api_errors(api_url), httpx.Client(timeout=10.0) as client:
        response = client.get(f"{api_url}/api/capsules")

    if response.status_code != 200:
        _fail(f"Failed to list capsules: {_error_detail(response)}")

    data = response.json()
    expiring = data.get("expiring", [])
    upcoming = data.get("upcoming", [])
    if not expiring and not upcoming:
        typer.echo("No capsules yet.")
        return

    if expiring:
        typer.echo(typer.style("Expiring", bold=True, underline=True))
        for capsule in expiring:
            typer.echo(format_capsule(capsule))
    if upcoming:
        if expiring:
            typer.echo("")
        typer.echo(typer.style("Upcoming", bold=True, underline=True))
        for capsule in upcoming:
            typer.echo(format_capsule(capsule))


@app.command()
def delete(
    capsule_id: Annotated[str, typer.Argument(help="Capsule to delete")],
) -> None:
    """Delete a capsule and its media."""
    api_url = get_api_url()
    with _api_errors(api_url), httpx.Client(timeout=10.0) as client:
        response = client.delete(f"{api_url}/api/capsules/{capsule_id}")

    if response.status_code != 204:
        _fail(f"Failed to delete capsule: {_error_detail(response)}")
    _success(f"Deleted capsule {capsule_id}")


@app.command()
def sweep() -> None:
    """Delete every expired capsule now."""
    api_url = get_api_url()
    with _api_errors(api_url), httpx.Client(timeout=30.0) as client:
        response = client.post(f"{api_url}/api/capsules/sweep")

    if response.status_code != 200:
        _fail(f"Sweep failed: {_error_detail(response)}")
    removed = response.json().get("removed", [])
    _success(f"Removed {len(removed)} expired capsule{'s' if len(removed) != 1 else ''}")


async def _view(api_url: str, capsule_id: str, assume_yes: bool) -> int:
    async with CapsuleClient(api_url) as client:
        try:
            session = await ViewSession.load(client, capsule_id)
        except NotYetAvailable as e:
            typer.echo(
                typer.style("🔒 ", bold=True)
                + f"This capsule unlocks in {format_time_until_available(e.available_in)}"
            )
            return 1
        except AlreadyExpired:
            typer.echo("This time capsule has expired.")
            return 1
        except CapsuleNotFound:
            typer.echo(f"Capsule {capsule_id} not found.", err=True)
            return 1

        capsule = session.capsule
        if capsule.first_opened_at is None and not assume_yes:
            prompt = (
                f"Once opened you have {format_duration(session.remaining())} to view "
                f"'{capsule.name}' before it disappears. Open it now?"
            )
            if not typer.confirm(prompt):
                return 0

        try:
            capsule = await session.open()
        except (NotYetAvailable, AlreadyExpired, CapsuleNotFound) as e:
            typer.echo(f"Cannot open capsule: {e}", err=True)
            return 1

        typer.echo(typer.style(capsule.name, bold=True))
        if capsule.type is CapsuleType.TEXT:
            typer.echo(capsule.content)
        else:
            typer.echo(f"{TYPE_ICONS[capsule.type.value]} {session.media_url}")

        last_shown: list[int] = []

        def show(remaining: float) -> None:
            whole = math.ceil(remaining)
            if last_shown and last_shown[-1] == whole:
                return
            last_shown.append(whole)
            typer.echo(f"\r⏳ {format_duration(remaining)} remaining ", nl=False)

        driver = CountdownDriver(
            capsule,
            on_expire=session.expire,
            interval=DETAIL_TICK_INTERVAL,
            on_tick=show,
        )
        async with driver:
            await driver.wait()

        typer.echo("")
        typer.echo("This capsule has expired and been deleted.")
        return 0


@app.command()
def view(
    capsule_id: Annotated[str, typer.Argument(help="Capsule to open")],
    yes: Annotated[
        bool,
        typer.Option("-y", "--yes", help="Open without asking for confirmation"),
    ] = False,
) -> None:
    """Open a capsule and show it until its viewing time runs out."""
    api_url = get_api_url()
    try:
        code = asyncio.run(_view(api_url, capsule_id, yes))
    except StoreUnavailable:
        _fail(f"Cannot connect to API at {api_url}. Is the server running?")
    except KeyboardInterrupt:
        typer.echo("\nStopped viewing; the countdown keeps running.")
        code = 0
    sys.exit(code)


def print_listing(listing: Listing) -> None:
    """Print a one-line summary of a refreshed listing."""
    stamp = (listing.fetched_at or datetime.now(UTC)).astimezone().strftime("%H:%M:%S")
    summary = f"{len(listing.upcoming)} upcoming, {len(listing.expiring)} expiring"
    if listing.stale:
        typer.echo(
            typer.style(f"[{stamp}] ", dim=True)
            + typer.style(f"{summary} (stale: {listing.error})", fg=typer.colors.YELLOW)
        )
        return
    typer.echo(typer.style(f"[{stamp}] ", dim=True) + summary)


async def _watch(api_url: str, interval: float) -> None:
    async with CapsuleClient(api_url) as client:
        poller = AvailabilityPoller(
            ApiCapsuleSource(client),
            sweep_interval=interval,
            changes=client.changes,
        )
        poller.subscribe(print_listing)
        async with poller:
            await asyncio.Event().wait()


@app.command()
def watch(
    interval: Annotated[
        float,
        typer.Option("-i", "--interval", help="Seconds between scheduled refreshes"),
    ] = 60.0,
) -> None:
    """Follow the capsule listing as capsules unlock and expire.

    Refreshes on a schedule and whenever the server reports a change.
    Press Ctrl+C to stop.
    """
    api_url = get_api_url()
    typer.echo(
        typer.style("👀 ", bold=True)
        + f"Watching {api_url} (refresh every {interval:g}s). Press Ctrl+C to stop."
    )
    try:
        asyncio.run(_watch(api_url, interval))
    except KeyboardInterrupt:
        typer.echo("\n" + typer.style("Stopped watching.", fg=typer.colors.YELLOW))
    except CapsuleError as e:
        _fail(f"Watch failed: {e}")


@app.command()
def serve(
    host: Annotated[
        str,
        typer.Option("--host", help="Interface to bind"),
    ] = "127.0.0.1",
    port: Annotated[
        int,
        typer.Option("--port", help="Port for the API server"),
    ] = 8000,
    reload: Annotated[
        bool,
        typer.Option("--reload", help="Restart on code changes"),
    ] = False,
) -> None:
    """Start the API server."""
    import uvicorn

    typer.echo(typer.style("🚀 ", bold=True) + f"Starting API server on http://{host}:{port}")
    uvicorn.run("tcap.api.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
