"""Auth commands: status, import, logout."""

from __future__ import annotations

import time
from datetime import datetime
from pathlib import Path

import click
from pydantic import ValidationError
from rich.panel import Panel

from ._common import console, fail, home_option, load_home, open_coordinator, open_store
from ..auth import AuthSession, FirebaseAuth
from ..config import RemoteBackendType


def register_auth_commands(main: click.Group) -> None:
    """Register the auth command group."""

    @main.group()
    def auth():
        """Who this device syncs as."""

    @auth.command("status")
    @home_option
    def auth_status(home):
        """Show the signed-in identity and token expiry."""
        config = load_home(home)
        if config.sync.backend == RemoteBackendType.LOCAL:
            console.print(f"\n  Local backend, identity [cyan]{config.sync.local_uid}[/]\n")
            return

        session = FirebaseAuth(config.home, config.sync.api_key).session
        if session is None:
            console.print("\n  [yellow]Signed out.[/]\n")
            return

        if session.expires_at:
            remaining = session.expires_at - time.time()
            expiry = datetime.fromtimestamp(session.expires_at).strftime("%Y-%m-%d %H:%M:%S")
            expiry += " [red](expired)[/]" if remaining <= 0 else f" ({int(remaining // 60)} min left)"
        else:
            expiry = "[dim]unknown[/]"
        console.print()
        console.print(
            Panel(
                f"UID: [cyan]{session.uid}[/]\n"
                f"Email: {session.email or '[dim]none[/]'}\n"
                f"Name: {session.display_name or '[dim]none[/]'}\n"
                f"Token expires: {expiry}\n"
                f"Refresh token: {'[green]stored[/]' if session.refresh_token else '[red]missing[/]'}",
                title="Signed in",
                border_style="green",
            )
        )
        console.print()

    @auth.command("import")
    @home_option
    @click.argument("session_file", type=click.Path(exists=True, dir_okay=False))
    def auth_import(home, session_file):
        """Store the JSON output of the browser sign-in flow."""
        config = load_home(home)
        if config.sync.backend != RemoteBackendType.FIRESTORE:
            fail("Sign-in is only used by the firestore backend")
        try:
            session = AuthSession.model_validate_json(Path(session_file).read_text(encoding="utf-8"))
        except ValidationError as exc:
            fail(f"Invalid session file: {exc.error_count()} error(s)")
        FirebaseAuth(config.home, config.sync.api_key).store_session(session)
        console.print(f"\n  [green]Signed in as[/] [cyan]{session.uid}[/]\n")

    @auth.command("logout")
    @home_option
    def auth_logout(home):
        """Forget credentials. Local tasks are kept."""
        config = load_home(home)
        with open_store(config) as store:
            coordinator = open_coordinator(config, store)
            if not coordinator.auth.is_signed_in:
                console.print("\n  [dim]Already signed out.[/]\n")
                return
            coordinator.sign_out()
        console.print("\n  [yellow]Signed out.[/] Local tasks were kept.\n")
