# consentledger/cli/main.py
"""
CLI for registering principals, managing consent grants and auditing the ledger.
"""

from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from consentledger.blobstore import create_blobstore
from consentledger.chain.ledger import Ledger
from consentledger.config import Settings, load_settings
from consentledger.core.errors import ConsentLedgerError, error_code
from consentledger.core.types import GRANT_EVENTS, grant_summary
from consentledger.crypto.keys import PrincipalKeyPair, generate_keypair
from consentledger.log import get_logger
from consentledger.session.orchestrator import FlowResult, SessionOrchestrator
from consentledger.verify.auditor import AuditVerifier

app = typer.Typer(
    name="consentledger",
    help="Consent-gated access to encrypted records",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

# Placeholder admin for read-only use; verify and reject refuse to run without a configured admin.
NO_ADMIN = "0x" + "0" * 40


class State:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._ledger: Optional[Ledger] = None
        self._orchestrator: Optional[SessionOrchestrator] = None

    @property
    def ledger(self) -> Ledger:
        if self._ledger is None:
            try:
                self._ledger = Ledger.open(self.settings.storage_uri, self.settings.admin or NO_ADMIN)
            except Exception as e:
                console.print(f"[red]Failed to open ledger database: {e}[/]")
                raise typer.Exit(1)
        return self._ledger

    @property
    def orchestrator(self) -> SessionOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = SessionOrchestrator(
                self.ledger,
                create_blobstore(self.settings.blobstore_uri),
                iterations=self.settings.pbkdf2_iterations,
            )
        return self._orchestrator

    def close(self) -> None:
        if self._ledger is not None:
            self._ledger.close()


def _state(ctx: typer.Context) -> State:
    return ctx.obj


def _done(result: FlowResult, success: Optional[str]):
    """Print the outcome of a flow; exits 1 on failure."""
    if not result:
        console.print(f"[red]✗ {result.error} ({error_code(result.error)})[/]")
        raise typer.Exit(1)
    if success:
        console.print(f"[green]✓ {success}[/]")
    return result.value


def _owner_salt(settings: Settings, owner: str, salt_hex: Optional[str]) -> Optional[bytes]:
    if salt_hex:
        try:
            return bytes.fromhex(salt_hex)
        except ValueError:
            console.print(f"[red]Salt must be hex: {salt_hex!r}[/]")
            raise typer.Exit(1)
    path = settings.salt_dir / owner.lower()
    return bytes.fromhex(path.read_text().strip()) if path.exists() else None


def _remember_salt(settings: Settings, owner: str, salt: bytes) -> None:
    settings.salt_dir.mkdir(parents=True, exist_ok=True)
    (settings.salt_dir / owner.lower()).write_text(salt.hex())


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to SQLite database (overrides CONSENT_DB_PATH env var)",
    ),
    blobs: Optional[Path] = typer.Option(
        None,
        "--blobs",
        help="Blob directory (overrides CONSENT_BLOB_DIR env var)",
    ),
    admin: Optional[str] = typer.Option(None, "--admin", help="Admin address (overrides CONSENT_ADMIN)"),
):
    """Manage consent grants over encrypted records."""
    try:
        settings = load_settings(db_path=db, blob_dir=blobs, admin=admin)
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/]")
        raise typer.Exit(1)
    get_logger(level=settings.log_level)
    state = State(settings)
    ctx.obj = state
    ctx.call_on_close(state.close)


# ── keys & registration ─────────────────────────────────────────────────────

@app.command()
def keygen(
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write the private key here instead of printing it"),
):
    """Generate a secp256k1 key pair."""
    keypair = generate_keypair()
    console.print(f"Public key:  {keypair.public_key_b64url()}")
    console.print(f"Fingerprint: {keypair.fingerprint()}")
    if out:
        out.write_text(keypair.private_key_b64url())
        out.chmod(0o600)
        console.print(f"[green]Private key written to {out}[/]")
    else:
        console.print(f"Private key: {keypair.private_key_b64url()}")
        console.print("[yellow]Store the private key now; it cannot be recovered.[/]")


@app.command("register-owner")
def register_owner(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Owner address"),
    content_ref: str = typer.Option("", "--content-ref", help="Profile data reference"),
):
    """Register an address as a record owner (patient)."""
    _done(_state(ctx).orchestrator.register_owner(address, content_ref), f"Owner {address} registered")


@app.command("register-requester")
def register_requester(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Requester address"),
    content_ref: str = typer.Option("", "--content-ref", help="Profile data reference"),
    key_out: Optional[Path] = typer.Option(None, "--key-out", help="Write the private key here instead of printing it"),
):
    """Register an address as a requester (provider) with a fresh key pair."""
    creds = _done(
        _state(ctx).orchestrator.register_requester(address, content_ref),
        f"Requester {address} registered, awaiting verification",
    )
    if key_out:
        key_out.write_text(creds.private_key_b64url)
        key_out.chmod(0o600)
        console.print(f"Private key written to {key_out}")
    else:
        console.print(f"Private key: {creds.private_key_b64url}")
        console.print("[yellow]Shown once. Store it now; it cannot be recovered.[/]")


@app.command()
def verify(
    ctx: typer.Context,
    requester: str = typer.Argument(..., help="Requester address"),
    caller: Optional[str] = typer.Option(None, "--as", help="Admin address (default: configured admin)"),
):
    """Mark a requester as verified (admin only)."""
    state = _state(ctx)
    if not state.settings.admin:
        console.print("[red]No admin configured. Set CONSENT_ADMIN or pass --admin.[/]")
        raise typer.Exit(1)
    caller = caller or state.settings.admin
    _done(state.orchestrator.verify_requester(caller, requester), f"Requester {requester} verified")


@app.command()
def reject(
    ctx: typer.Context,
    requester: str = typer.Argument(..., help="Requester address"),
    caller: Optional[str] = typer.Option(None, "--as", help="Admin address (default: configured admin)"),
):
    """Reject a requester permanently (admin only)."""
    state = _state(ctx)
    if not state.settings.admin:
        console.print("[red]No admin configured. Set CONSENT_ADMIN or pass --admin.[/]")
        raise typer.Exit(1)
    caller = caller or state.settings.admin
    _done(state.orchestrator.reject_requester(caller, requester), f"Requester {requester} rejected")


@app.command()
def requesters(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status", help="pending, verified or rejected"),
):
    """List registered requesters for admin review."""
    rows = _state(ctx).ledger.call("listRequesters", None, status)
    if not rows:
        console.print("[yellow]No requesters found.[/]")
        return

    table = Table(title="Requesters")
    table.add_column("Address")
    table.add_column("Status")
    table.add_column("Registered")
    table.add_column("Profile")
    for identity in rows:
        table.add_row(identity.address, identity.status, identity.registered_at or "—", identity.content_ref or "—")
    console.print(table)


# ── access ──────────────────────────────────────────────────────────────────

@app.command()
def request(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner address"),
    caller: str = typer.Option(..., "--as", help="Requester address"),
    purpose: str = typer.Option(..., "--purpose", "-p", help="Why access is needed"),
):
    """Request access to an owner's records."""
    _done(_state(ctx).orchestrator.request_access(caller, owner, purpose), f"Access requested from {owner}")


@app.command()
def approve(
    ctx: typer.Context,
    requester: str = typer.Argument(..., help="Requester address"),
    caller: str = typer.Option(..., "--as", help="Owner address"),
    refs: List[str] = typer.Option(..., "--ref", "-r", help="Content id to share (repeatable)"),
    secret: str = typer.Option(..., "--secret", prompt=True, hide_input=True, help="Owner secret"),
    salt: Optional[str] = typer.Option(None, "--salt", help="Hex salt (default: the one stored with the records)"),
):
    """Grant a requester access to selected records."""
    state = _state(ctx)
    known_salt = _owner_salt(state.settings, caller, salt) if salt else None
    _done(
        state.orchestrator.approve_access(caller, requester, refs, secret=secret, salt=known_salt),
        f"Access granted to {requester} for {len(set(refs))} record(s)",
    )


@app.command()
def revoke(
    ctx: typer.Context,
    requester: str = typer.Argument(..., help="Requester address"),
    caller: str = typer.Option(..., "--as", help="Owner address"),
):
    """Revoke a requester's access."""
    _done(_state(ctx).orchestrator.revoke_access(caller, requester), f"Access revoked for {requester}")


@app.command()
def status(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner address"),
    requester: str = typer.Argument(..., help="Requester address"),
    as_json: bool = typer.Option(False, "--json", help="Print the grant as JSON"),
):
    """Show the grant state for an (owner, requester) pair."""
    grant = _done(_state(ctx).orchestrator.access_status(owner, requester), None if as_json else "Grant loaded")
    if as_json:
        console.print_json(data=grant_summary(grant))
        return
    console.print(f"State:    [bold]{grant.state.value}[/]")
    console.print(f"Purpose:  {grant.purpose or '—'}")
    console.print(f"Records:  {', '.join(sorted(grant.content_refs)) or '—'}")
    console.print(f"Version:  {grant.version}")


@app.command()
def pending(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner address"),
):
    """List requests awaiting the owner's decision."""
    grants = _done(_state(ctx).orchestrator.pending_requests(owner), f"Pending requests for {owner}")
    if not grants:
        console.print("[yellow]No pending requests.[/]")
        return

    table = Table(title="Pending Requests")
    table.add_column("Requester")
    table.add_column("Purpose")
    table.add_column("Requested")
    for grant in grants:
        table.add_row(grant.requester, grant.purpose, grant.requested_at)
    console.print(table)


@app.command()
def history(
    ctx: typer.Context,
    owner: Optional[str] = typer.Option(None, "--owner", help="Filter by owner"),
    requester: Optional[str] = typer.Option(None, "--requester", help="Filter by requester"),
    everything: bool = typer.Option(False, "--all", help="Include registry and record events"),
    limit: int = typer.Option(50, "--limit", "-n", help="Number of recent events to show"),
):
    """Show the access history from the event log."""
    events = _state(ctx).ledger.events.history(
        owner=owner.lower() if owner else None,
        requester=requester.lower() if requester else None,
        types=None if everything else GRANT_EVENTS,
    )
    if not events:
        console.print("[yellow]No events found.[/]")
        return

    table = Table(title="Access History")
    table.add_column("#")
    table.add_column("Time")
    table.add_column("Event")
    table.add_column("Owner")
    table.add_column("Requester")
    table.add_column("Details")
    for event in events[-limit:]:
        details = ", ".join(f"{k}={v}" for k, v in sorted(event.data.items()) if k != "public_key")
        table.add_row(
            str(event.sequence), event.timestamp, event.type.value,
            event.owner or "—", event.requester or "—", details,
        )
    console.print(table)


@app.command()
def audit(ctx: typer.Context):
    """Verify the event log hash chain and replay it against stored grants."""
    result = AuditVerifier().verify_from_storage(_state(ctx).ledger.store)
    if result.is_valid:
        console.print("[green]✓ Ledger is consistent[/]")
        console.print(f"  {result.message}")
    else:
        console.print("[red]✗ Audit failed[/]")
        for failure in result.failures:
            console.print(f"  • [{failure.index}] {failure.category}: {failure.message}")
        raise typer.Exit(1)


# ── records ─────────────────────────────────────────────────────────────────

@app.command()
def upload(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to encrypt and upload"),
    owner: str = typer.Option(..., "--owner", help="Owner address"),
    caller: Optional[str] = typer.Option(None, "--as", help="Uploader address (default: the owner)"),
    secret: str = typer.Option(..., "--secret", prompt=True, hide_input=True, help="Owner secret"),
    salt: Optional[str] = typer.Option(None, "--salt", help="Hex salt (default: saved per owner)"),
):
    """Encrypt a file under the owner's record key and index it."""
    state = _state(ctx)
    orchestrator = state.orchestrator
    known_salt = _owner_salt(state.settings, owner, salt)
    try:
        derived = orchestrator.derive_record_key(secret, known_salt)
    except ConsentLedgerError as e:
        console.print(f"[red]✗ {e} ({error_code(e)})[/]")
        raise typer.Exit(1)

    cid = _done(
        orchestrator.upload_record(caller or owner, owner, file.read_bytes(), derived),
        f"Uploaded {file.name}",
    )
    if known_salt is None:
        _remember_salt(state.settings, owner, derived.salt)
        console.print(f"Salt:       {derived.salt.hex()}")
    console.print(f"Content id: {cid}")


@app.command()
def records(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner address"),
):
    """List the owner's record index."""
    rows = _done(_state(ctx).orchestrator.list_records(owner), f"Records for {owner}")
    if not rows:
        console.print("[yellow]No records.[/]")
        return

    table = Table(title="Records")
    table.add_column("Content id")
    table.add_column("Uploaded")
    table.add_column("Uploader")
    for record in rows:
        table.add_row(record.content_ref, record.created_at, record.uploader)
    console.print(table)


@app.command()
def retrieve(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner address"),
    caller: str = typer.Option(..., "--as", help="Requester address"),
    key_file: Path = typer.Option(..., "--key-file", exists=True, dir_okay=False, help="Requester private key"),
    out: Path = typer.Option(Path("."), "--out", "-o", help="Directory for decrypted records"),
):
    """Decrypt every record the owner has shared with the requester."""
    try:
        keypair = PrincipalKeyPair.from_private_b64url(key_file.read_text().strip())
    except ValueError as e:
        console.print(f"[red]Unreadable private key: {e}[/]")
        raise typer.Exit(1)

    result = _state(ctx).orchestrator.retrieve_records(caller, owner, keypair)
    items = _done(result, f"Unlocked records from {owner}")
    out.mkdir(parents=True, exist_ok=True)
    for item in items:
        if item.ok:
            (out / item.content_ref).write_bytes(item.data)
            console.print(f"  • {item.content_ref} → {out / item.content_ref}")
        else:
            console.print(f"  • [red]{item.content_ref}: {item.error} ({error_code(item.error)})[/]")
    if result.failures:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
