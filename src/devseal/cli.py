"""Command line interface for devseal."""

from __future__ import annotations

import getpass
import logging
from contextlib import ExitStack
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import IO, Callable

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from devseal import __version__
from devseal.crypto.kdf import Argon2Params, resolve_argon_params
from devseal.crypto.keys import EncryptionKeyPair, short_kid
from devseal.devices import DeviceRegistry, DeviceType, JsonRegistryStore
from devseal.engine import (
    DecryptOptions,
    EngineContext,
    SenderInfo,
    decrypt as run_decrypt,
    encrypt as run_encrypt,
    resolve_encrypt_options,
)
from devseal.envelope import inspect_envelope
from devseal.errors import (
    DeviceError,
    DevsealError,
    EnvelopeFormatError,
    FormatMismatch,
    IntegrityError,
    InvalidPassphrase,
    NoDecryptionKey,
    PolicyRejected,
    UnknownRecipient,
    UnsupportedFeatureError,
    VerificationFailure,
)
from devseal.session import DeviceSession, FileSessionStore, sign_up
from devseal.trust import (
    REGISTRY_PROOF_SERVICE,
    IdentityProof,
    RegistryKeyIndex,
    RegistryProofChecker,
    SenderClassification,
    SenderTrustResolver,
    TrackingStore,
)

EXIT_SUCCESS = 0
EXIT_USAGE = 1
EXIT_CRYPTO = 2
EXIT_FS = 3
EXIT_CORRUPT = 4
EXIT_FORMAT = 5
EXIT_TRUST = 6

DEFAULT_HOME = Path("~/.devseal")

console = Console(stderr=True)


def _package_version() -> str:
    try:
        return version("devseal")
    except PackageNotFoundError:
        return __version__


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logger = logging.getLogger("devseal")
    if not any(isinstance(handler, RichHandler) for handler in logger.handlers):
        logger.addHandler(RichHandler(console=console, show_path=False))
    logger.setLevel(logging.DEBUG)


class CliState:
    """Lazily opened stores under the devseal home directory."""

    def __init__(self, home: Path, user: str | None, passphrase: str | None, argon: Argon2Params) -> None:
        self.home = home
        self.user = user
        self._passphrase = passphrase
        self.argon = argon
        self._registry: DeviceRegistry | None = None

    def passphrase(self) -> str:
        if self._passphrase is None:
            self._passphrase = getpass.getpass("Passphrase: ")
        return self._passphrase

    @property
    def registry(self) -> DeviceRegistry:
        if self._registry is None:
            self._registry = DeviceRegistry(JsonRegistryStore(self.home / "registry.json"))
        return self._registry

    @property
    def sessions(self) -> FileSessionStore:
        return FileSessionStore(self.home / "sessions", self.passphrase, self.argon)

    def trust(self) -> SenderTrustResolver:
        return SenderTrustResolver(
            RegistryKeyIndex(self.registry),
            TrackingStore(self.home / "tracking.json"),
            RegistryProofChecker(self.registry),
        )

    def current_username(self) -> str:
        if self.user:
            return self.user
        known = self.sessions.usernames()
        if len(known) == 1:
            return known[0]
        if not known:
            raise DeviceError("No local session; run 'devseal signup' first")
        raise DeviceError(f"Several local sessions ({', '.join(known)}); choose one with --user")

    def session(self) -> DeviceSession:
        username = self.current_username()
        session = self.sessions.load(username)
        if session is None:
            raise DeviceError(f"No local session for {username!r}")
        return session

    def context(self, extra_keys: tuple[EncryptionKeyPair, ...] = ()) -> EngineContext:
        return EngineContext.from_session(self.session(), self.registry, self.trust(), extra_keys=extra_keys)


class _LazyOutput:
    """Binary sink that opens its target on first write."""

    def __init__(self, path: Path | None, overwrite: bool) -> None:
        if path is not None and path.exists() and not overwrite:
            raise FileExistsError(f"{path} already exists")
        self.path = path
        self._handle: IO[bytes] | None = None

    def _open(self) -> IO[bytes]:
        if self._handle is None:
            if self.path is None:
                self._handle = click.get_binary_stream("stdout")
            else:
                self._handle = self.path.open("wb")
        return self._handle

    def write(self, data: bytes) -> int:
        return self._open().write(data)

    def finish(self) -> None:
        handle = self._open()
        handle.flush()
        if self.path is not None:
            handle.close()

    def discard(self) -> None:
        if self._handle is not None and self.path is not None:
            self._handle.close()
            self.path.unlink(missing_ok=True)


def _open_input(stack: ExitStack, path: Path | None) -> IO[bytes]:
    if path is None or str(path) == "-":
        return click.get_binary_stream("stdin")
    return stack.enter_context(path.open("rb"))


def _device_label(info) -> str:
    return f"{info.name} ({info.type.value}, {info.id[:8]})"


def _handle_action(action: Callable[[], None]) -> int:
    try:
        action()
    except FormatMismatch as exc:
        console.print(f"[red]{exc}[/red]")
        return EXIT_FORMAT
    except NoDecryptionKey as exc:
        console.print(f"[red]{exc}[/red]")
        for device in exc.devices:
            console.print(f"  - {_device_label(device)}")
        return EXIT_CRYPTO
    except InvalidPassphrase:
        console.print("[red]Invalid passphrase[/red]")
        return EXIT_CRYPTO
    except (IntegrityError, EnvelopeFormatError) as exc:
        console.print(f"[red]Error: message is corrupted or not supported:[/red] {exc}")
        return EXIT_CORRUPT
    except (PolicyRejected, VerificationFailure) as exc:
        console.print(f"[red]Sender not accepted:[/red] {exc}")
        return EXIT_TRUST
    except UnknownRecipient as exc:
        console.print(f"[red]{exc}[/red]")
        return EXIT_USAGE
    except (DeviceError, UnsupportedFeatureError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return EXIT_USAGE
    except DevsealError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return EXIT_USAGE
    except FileExistsError as exc:
        console.print(f"[red]{exc}. Use --overwrite to replace.[/red]")
        return EXIT_FS
    except FileNotFoundError as exc:
        console.print(f"[red]File not found:[/red] {exc}")
        return EXIT_FS
    except PermissionError as exc:
        console.print(f"[red]Permission denied:[/red] {exc}")
        return EXIT_FS
    except OSError as exc:  # noqa: BLE001
        console.print(f"[red]Filesystem error:[/red] {exc}")
        return EXIT_FS
    except Exception as exc:  # noqa: BLE001
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return EXIT_USAGE
    return EXIT_SUCCESS


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=_package_version(), prog_name="devseal")
@click.option(
    "--home",
    type=click.Path(path_type=Path, file_okay=False),
    envvar="DEVSEAL_HOME",
    default=str(DEFAULT_HOME),
    show_default=True,
    help="Directory holding the registry, sessions and tracking statements.",
)
@click.option("--user", envvar="DEVSEAL_USER", help="Local account to act as.")
@click.option("--passphrase", envvar="DEVSEAL_PASSPHRASE", help="Session passphrase (prompts if omitted).")
@click.option("--argon-mem-kib", type=int, default=None, help="Argon2 memory cost for new session files.")
@click.option("--argon-time", type=int, default=None, help="Argon2 time cost for new session files.")
@click.option("-v", "--verbose", is_flag=True, help="Log protocol and engine steps.")
@click.pass_context
def cli(
    ctx: click.Context,
    home: Path,
    user: str | None,
    passphrase: str | None,
    argon_mem_kib: int | None,
    argon_time: int | None,
    verbose: bool,
) -> None:
    """Multi-device message encryption with sender trust checks."""

    _configure_logging(verbose)
    try:
        argon = resolve_argon_params(mem_kib=argon_mem_kib, time_cost=argon_time)
    except UnsupportedFeatureError as exc:
        console.print(f"[red]Invalid Argon2 parameters:[/red] {exc}")
        ctx.exit(EXIT_USAGE)
        return
    ctx.obj = CliState(Path(home).expanduser(), user, passphrase, argon)


@cli.command(help="Create an account with this device and a backup device.")
@click.argument("username")
@click.option("--device-name", default="desktop", show_default=True)
@click.option(
    "--type",
    "device_type",
    type=click.Choice(["desktop", "mobile"], case_sensitive=False),
    default="desktop",
    show_default=True,
)
@click.option("--backup/--no-backup", default=True, help="Also create a backup device.")
@click.pass_context
def signup(ctx: click.Context, username: str, device_name: str, device_type: str, backup: bool) -> None:
    state: CliState = ctx.obj

    def _run() -> None:
        session, backup_session = sign_up(
            state.registry, username, device_name, DeviceType(device_type.lower()), backup=backup
        )
        state.sessions.save(session)
        console.print(f"[green]Signed up[/green] {username} with device {session.device.id[:8]}.")
        if backup_session is not None:
            console.print("Backup key (store it offline; use with 'decrypt --backup-key'):")
            click.echo(backup_session.encryption_key.private_bytes.hex())

    ctx.exit(_handle_action(_run))


@cli.command(help="List the devices of a user.")
@click.argument("username", required=False)
@click.option("--all", "show_all", is_flag=True, help="Include revoked devices.")
@click.pass_context
def devices(ctx: click.Context, username: str | None, show_all: bool) -> None:
    state: CliState = ctx.obj

    def _run() -> None:
        name = username or state.current_username()
        user = state.registry.get_user(name)
        if user is None:
            raise DeviceError(f"Unknown user {name!r}")
        table = Table(title=f"Devices of {name}")
        table.add_column("ID")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Key")
        table.add_column("Status")
        for device in user.devices:
            table.add_row(device.id, device.name, device.type.value, short_kid(device.encryption_key), "active")
        if show_all:
            for device in user.revoked:
                table.add_row(device.id, device.name, device.type.value, short_kid(device.encryption_key), "revoked")
        console.print(table)

    ctx.exit(_handle_action(_run))


@cli.command(help="Revoke one of your devices.")
@click.argument("device_id")
@click.pass_context
def revoke(ctx: click.Context, device_id: str) -> None:
    state: CliState = ctx.obj

    def _run() -> None:
        username = state.current_username()
        if state.registry.revoke_device(username, device_id):
            console.print(f"[green]Revoked[/green] device {device_id}.")
        else:
            console.print(f"Device {device_id} was already revoked.")

    ctx.exit(_handle_action(_run))


@cli.command(
    help="Encrypt to the devices of the given users (and your own devices).",
    epilog="Example:\n  devseal encrypt -r alice notes.txt -o notes.seal",
)
@click.argument("input_path", required=False, type=click.Path(path_type=Path, allow_dash=True))
@click.option("-o", "--output", "output_path", type=click.Path(path_type=Path), help="Output file (stdout if omitted).")
@click.option("-r", "--recipient", "recipients", multiple=True, help="Recipient username (repeatable).")
@click.option("--no-self", is_flag=True, help="Do not encrypt to your own devices.")
@click.option("--hide-sender", is_flag=True, help="Do not reveal the sender to recipients.")
@click.option("--hide-recipients", is_flag=True, help="Do not list recipient keys in the header.")
@click.option("--binary", is_flag=True, help="Write binary instead of armored output.")
@click.option("--overwrite/--no-overwrite", default=False, help="Overwrite output if it already exists.")
@click.pass_context
def encrypt(
    ctx: click.Context,
    input_path: Path | None,
    output_path: Path | None,
    recipients: tuple[str, ...],
    no_self: bool,
    hide_sender: bool,
    hide_recipients: bool,
    binary: bool,
    overwrite: bool,
) -> None:
    state: CliState = ctx.obj

    def _run() -> None:
        options = resolve_encrypt_options(
            recipients,
            suppress_self_encryption=no_self,
            hide_sender=hide_sender,
            hide_recipients=hide_recipients,
            armor=not binary,
        )
        engine_ctx = state.context()
        sink = _LazyOutput(output_path, overwrite)
        with ExitStack() as stack:
            try:
                run_encrypt(engine_ctx, _open_input(stack, input_path), sink, options)  # type: ignore[arg-type]
            except BaseException:
                sink.discard()
                raise
            sink.finish()
        if output_path is not None:
            console.print(f"[green]Encrypted to[/green] {output_path}.")

    ctx.exit(_handle_action(_run))


@cli.command(help="Decrypt a message addressed to one of your devices.")
@click.argument("input_path", required=False, type=click.Path(path_type=Path, allow_dash=True))
@click.option("-o", "--output", "output_path", type=click.Path(path_type=Path), help="Output file (stdout if omitted).")
@click.option("--force-remote-check", is_flag=True, help="Re-verify the sender's identity proofs now.")
@click.option("--require-tracked", is_flag=True, help="Refuse senders that are not tracked and verified.")
@click.option("--backup-key", help="Hex backup key to try in addition to this device's key.")
@click.option("--overwrite/--no-overwrite", default=False, help="Overwrite output if it already exists.")
@click.pass_context
def decrypt(
    ctx: click.Context,
    input_path: Path | None,
    output_path: Path | None,
    force_remote_check: bool,
    require_tracked: bool,
    backup_key: str | None,
    overwrite: bool,
) -> None:
    state: CliState = ctx.obj

    def _policy(classification: SenderClassification, sender: SenderInfo) -> None:
        who = sender.username or ("anonymous" if sender.anonymous else "unknown sender")
        console.print(f"Sender: {who} ({classification.value})")
        if require_tracked and classification is not SenderClassification.TRACKING_OK:
            raise PolicyRejected(f"sender {who} is {classification.value}")

    def _run() -> None:
        extra: tuple[EncryptionKeyPair, ...] = ()
        if backup_key:
            try:
                extra = (EncryptionKeyPair.from_private_bytes(bytes.fromhex(backup_key)),)
            except ValueError as exc:
                raise UnsupportedFeatureError("Backup key must be 64 hex characters") from exc
        engine_ctx = state.context(extra)
        sink = _LazyOutput(output_path, overwrite)
        with ExitStack() as stack:
            try:
                run_decrypt(
                    engine_ctx,
                    _open_input(stack, input_path),
                    sink,
                    _policy,
                    DecryptOptions(force_remote_check=force_remote_check),
                )
            except BaseException:
                sink.discard()
                raise
            sink.finish()
        if output_path is not None:
            console.print(f"[green]Decrypted to[/green] {output_path}.")

    ctx.exit(_handle_action(_run))


@cli.command(help="Show envelope header information without decrypting.")
@click.argument("input_path", required=False, type=click.Path(path_type=Path, allow_dash=True))
@click.pass_context
def info(ctx: click.Context, input_path: Path | None) -> None:
    state: CliState = ctx.obj

    def _run() -> None:
        with ExitStack() as stack:
            overview = inspect_envelope(_open_input(stack, input_path))
        table = Table(show_header=False, box=None)
        table.add_row("Format", overview.format.label)
        table.add_row("Encoding", "armored" if overview.armored else "binary")
        table.add_row("Header size", f"{overview.header_len} B")
        table.add_row("Recipients", str(overview.recipient_count))
        table.add_row("Recipient keys", "hidden" if overview.hidden_recipients else "listed")
        console.print("[bold]devseal envelope[/bold]")
        console.print(table)
        for key in overview.recipient_key_ids:
            found = state.registry.lookup_key(key)
            owner = f"{found[0]} / {found[1].name} ({found[1].type.value})" if found else "unknown device"
            console.print(f"  - {short_kid(key)}: {owner}")

    ctx.exit(_handle_action(_run))


@cli.command(help="Track a user: verify and remember their identity proofs.")
@click.argument("username")
@click.pass_context
def track(ctx: click.Context, username: str) -> None:
    state: CliState = ctx.obj

    def _run() -> None:
        tracker = state.current_username()
        statement = state.trust().track(tracker, username, [IdentityProof(REGISTRY_PROOF_SERVICE, username)])
        console.print(f"[green]Tracking[/green] {username} ({len(statement.required)} proof(s) verified).")

    ctx.exit(_handle_action(_run))


def main(argv: list[str] | None = None) -> int:
    try:
        return cli.main(args=argv, prog_name="devseal", standalone_mode=False)
    except SystemExit as exc:  # noqa: TRY003
        code = exc.code if isinstance(exc.code, int) else EXIT_USAGE
        return code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
