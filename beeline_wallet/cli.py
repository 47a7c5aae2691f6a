"""Command line interface: ``beeline login``, ``beeline keys``, ``beeline accounts``."""
import binascii
import functools
import logging
from pathlib import Path
from typing import Optional

import click
import orjson

from .exceptions import InvalidInput, VaultError
from .vault.config import VaultConfig
from .vault.derivation import public_key_from_private
from .vault.models import Role
from .vault.secret import SecretBuffer
from .version import __version__
from .wallet import DEFAULT_LOGIN_ROLES, Wallet

logger = logging.getLogger("beeline.cli")

ROLE_CHOICE = click.Choice([r.value for r in Role], case_sensitive=False)


def prompt_secret(label: str, confirm: bool = False) -> SecretBuffer:
    """Read a hidden value from the terminal into a SecretBuffer."""
    return SecretBuffer(click.prompt(label, hide_input=True, confirmation_prompt=confirm))


def decode_hex_secret(text: SecretBuffer) -> SecretBuffer:
    """Decode hex text held in ``text`` into a new buffer; ``text`` is scrubbed.

    Raises:
        InvalidInput: If the text is not hex.
    """
    with text:
        try:
            return SecretBuffer(binascii.a2b_hex(text.borrow()))
        except ValueError:
            raise InvalidInput("private key must be hex encoded") from None


def handle_vault_errors(func):
    """Turn vault errors into a one-line message and exit status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except VaultError as err:
            logger.debug("Command failed: %s", type(err).__name__)
            raise click.ClickException(f"{type(err).__name__}: {err}") from None
    return wrapper


def get_wallet(ctx: click.Context) -> Wallet:
    return ctx.obj["wallet"]


def _pin_prompt(account: str, role: Role) -> SecretBuffer:
    return prompt_secret(f"PIN for @{account} ({role.value})")


@click.group()
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding the vault file (default ~/.beeline).",
)
@click.version_option(__version__, prog_name="beeline")
@click.pass_context
def cli(ctx: click.Context, home: Optional[Path]) -> None:
    """Beeline terminal wallet: secure key vault for Hive accounts."""
    try:
        config = VaultConfig.from_env(home=home)
    except ValueError as err:
        raise click.ClickException(f"Invalid configuration: {err}") from None
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    obj = ctx.ensure_object(dict)
    wallet = Wallet(
        config=config,
        credential_store=obj.get("credential_store"),
        pin_prompt=_pin_prompt,
        on_progress=lambda message: click.echo(message),
    )
    try:
        wallet.open()
    except VaultError as err:
        raise click.ClickException(f"{type(err).__name__}: {err}") from None
    obj["wallet"] = wallet


# ---------------------------------------------------------------------------
# login
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("account")
@click.option(
    "--roles", "-r",
    default=",".join(r.value for r in DEFAULT_LOGIN_ROLES),
    show_default=True,
    help="Key roles to derive (comma-separated).",
)
@click.option("--pin/--no-pin", default=True, help="Encrypt keys with a PIN (default) or use the OS keychain.")
@click.option("--force", "-f", is_flag=True, help="Overwrite stored keys without confirmation.")
@click.pass_context
@handle_vault_errors
def login(ctx: click.Context, account: str, roles: str, pin: bool, force: bool) -> None:
    """Derive keys for ACCOUNT from its master password."""
    wallet = get_wallet(ctx)
    requested = [Role.parse(r) for r in roles.split(",") if r.strip()]
    if not requested:
        raise InvalidInput("no roles requested")

    overwrite = force
    if wallet.registry.has_account(account) and not force:
        click.confirm(
            f"Account @{account.lstrip('@')} already exists in vault. Overwrite keys?",
            abort=True,
        )
        overwrite = True

    password = prompt_secret("Master password")
    pin_buf = prompt_secret("Set encryption PIN", confirm=True) if pin else None
    try:
        click.echo("Deriving keys from master password...")
        records = wallet.login(account, password, pin_buf, requested, overwrite=overwrite)
    finally:
        password.scrub()
        if pin_buf is not None:
            pin_buf.scrub()

    summary = wallet.registry.get_account_summary(account)
    click.echo(f"Stored {len(records)} key(s) for @{summary.account}: "
               f"{', '.join(r.value for r in summary.roles)}")
    click.echo(f"Security: {'PIN protected' if pin else 'OS keychain only'}")
    if summary.is_default:
        click.echo("Default account")


# ---------------------------------------------------------------------------
# keys
# ---------------------------------------------------------------------------

@cli.group()
def keys() -> None:
    """Manage stored keys."""
    pass


@keys.command("list")
@click.pass_context
@handle_vault_errors
def keys_list(ctx: click.Context) -> None:
    """List stored keys per account."""
    wallet = get_wallet(ctx)
    accounts = wallet.registry.list_accounts()
    if not accounts:
        click.echo("No keys found in vault. Run: beeline login <account>")
        return
    default = wallet.registry.get_default_account()
    for account in accounts:
        marker = " (default)" if account == default else ""
        click.echo(f"@{account}{marker}")
        for info in wallet.registry.list_keys(account):
            storage = "pin" if info.encrypted else "keychain"
            click.echo(f"  {info.role.value:<8} {storage:<8} {info.public_key[:20]}...")


@keys.command("import")
@click.argument("account")
@click.argument("role", type=ROLE_CHOICE)
@click.option("--pin/--no-pin", default=True, help="Encrypt the key with a PIN.")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing key.")
@click.pass_context
@handle_vault_errors
def keys_import(ctx: click.Context, account: str, role: str, pin: bool, force: bool) -> None:
    """Import a raw private key (64 hex characters)."""
    wallet = get_wallet(ctx)
    private_key = decode_hex_secret(prompt_secret("Private key (hex)"))
    pin_buf = prompt_secret("Set encryption PIN", confirm=True) if pin else None
    try:
        record = wallet.import_key(account, role, private_key, pin_buf, overwrite=force)
    finally:
        private_key.scrub()
        if pin_buf is not None:
            pin_buf.scrub()
    click.echo(f"Imported {role} key for @{account.lstrip('@')} ({record.public_key[:20]}...)")


@keys.command("remove")
@click.argument("account")
@click.argument("role", type=ROLE_CHOICE)
@click.option("--force", "-f", is_flag=True, help="Skip confirmation.")
@click.pass_context
@handle_vault_errors
def keys_remove(ctx: click.Context, account: str, role: str, force: bool) -> None:
    """Remove one key from the vault."""
    wallet = get_wallet(ctx)
    if not force:
        click.confirm(f"Remove {role} key for @{account}? This cannot be undone.", abort=True)
    wallet.store.remove_key(account, role)
    click.echo("Key removed from vault")


@keys.command("set-default")
@click.argument("account")
@click.pass_context
@handle_vault_errors
def keys_set_default(ctx: click.Context, account: str) -> None:
    """Set the default account."""
    get_wallet(ctx).store.set_default_account(account)
    click.echo(f"Default account set to @{account.lstrip('@')}")


@keys.command("change-pin")
@click.argument("account")
@click.pass_context
@handle_vault_errors
def keys_change_pin(ctx: click.Context, account: str) -> None:
    """Re-encrypt the keys of ACCOUNT under a new PIN."""
    wallet = get_wallet(ctx)
    old_pin = prompt_secret("Current PIN")
    new_pin = prompt_secret("New PIN", confirm=True)
    try:
        stats = wallet.change_pin(account, old_pin, new_pin)
    finally:
        old_pin.scrub()
        new_pin.scrub()
    click.echo(f"Re-encrypted {stats['rekeyed']} key(s), skipped {stats['skipped']} keychain key(s)")


@keys.command("check")
@click.argument("account")
@click.argument("role", type=ROLE_CHOICE)
@click.pass_context
@handle_vault_errors
def keys_check(ctx: click.Context, account: str, role: str) -> None:
    """Unlock a key once and confirm it matches its public key."""
    wallet = get_wallet(ctx)
    public_key = wallet.unlock_flow.run(account, role, public_key_from_private)
    click.echo(f"Key unlocked and verified: {public_key[:20]}...")


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------

@cli.group()
def accounts() -> None:
    """Manage vault accounts."""
    pass


@accounts.command("list")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
@handle_vault_errors
def accounts_list(ctx: click.Context, output_format: str) -> None:
    """List accounts with their roles."""
    summaries = get_wallet(ctx).registry.get_all_account_summaries()
    if output_format == "json":
        payload = [s.model_dump(mode="json") for s in summaries]
        click.echo(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())
        return
    if not summaries:
        click.echo("No accounts in vault")
        return
    for summary in summaries:
        marker = "*" if summary.is_default else " "
        roles = ", ".join(r.value for r in summary.roles)
        click.echo(f"{marker} @{summary.account:<16} {summary.key_count} key(s)  {roles}")


@accounts.command("info")
@click.argument("account", required=False)
@click.pass_context
@handle_vault_errors
def accounts_info(ctx: click.Context, account: Optional[str]) -> None:
    """Show the keys of ACCOUNT (default account if omitted)."""
    wallet = get_wallet(ctx)
    account = account or wallet.registry.get_default_account()
    if not account:
        raise click.ClickException("No default account set")
    summary = wallet.registry.get_account_summary(account)
    click.echo(f"@{summary.account}{' (default)' if summary.is_default else ''}")
    for info in wallet.registry.list_keys(account):
        storage = "PIN encrypted" if info.encrypted else "OS keychain"
        click.echo(f"  {info.role.value:<8} {info.public_key}  [{storage}]")


@accounts.command("switch")
@click.argument("account")
@click.pass_context
@handle_vault_errors
def accounts_switch(ctx: click.Context, account: str) -> None:
    """Make ACCOUNT the default account."""
    get_wallet(ctx).store.set_default_account(account)
    click.echo(f"Switched default account to @{account.lstrip('@')}")


@accounts.command("remove")
@click.argument("account")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation.")
@click.pass_context
@handle_vault_errors
def accounts_remove(ctx: click.Context, account: str, force: bool) -> None:
    """Remove every key of ACCOUNT."""
    wallet = get_wallet(ctx)
    if not force:
        click.confirm(f"Remove all keys for @{account}? This cannot be undone.", abort=True)
    removed = wallet.store.remove_account(account)
    click.echo(f"Removed {len(removed)} key(s) for @{account.lstrip('@')}")
    if wallet.registry.get_default_account() is None and wallet.registry.list_accounts():
        click.echo("No default account set. Run: beeline accounts switch <account>")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
