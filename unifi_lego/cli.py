#!/usr/bin/env python3
"""
Command-line interface for unifi-lego.

Obtains certificates with lego and deploys them to the UniFi controller, its
keystore and optionally the RADIUS server. Meant to be run once with
``initial`` and then daily with ``renew`` from the installed systemd timer.
"""

import sys
from collections.abc import Callable
from pathlib import Path

import click

from .config import default_config, describe_settings, load_settings
from .config_utils import get_config_path, save_yaml_config
from .console import console_manager
from .logutil import init_logging, logger
from .orchestrator import RenewalOrchestrator
from .types import ConfigurationError, Error, KeystoreMode, Result, Success
from .utils import handle_exception

NO_BUNDLE_WARNING = (
    "keystore.no_bundle (NO_BUNDLE) is only supported experimentally. It is "
    "required for WiFiman, but clients without a cached copy of the CA "
    "intermediate certificate may fail to connect to the captive portal."
)


def common_options(restart: bool = True) -> Callable:
    """Decorator to DRY out the options shared by every action."""

    def decorator(f: Callable) -> Callable:
        options = [
            click.option("--config", type=click.Path(), help="Configuration file path"),
            click.option(
                "--log-level",
                type=click.Choice(
                    ["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False
                ),
                help="Logging level",
            ),
        ]
        if restart:
            options.append(
                click.option(
                    "--restart-services",
                    is_flag=True,
                    help="Force restart of services even if the certificate "
                    "was not renewed",
                )
            )
        for option in reversed(options):
            f = option(f)
        return f

    return decorator


def handle_result(result: Result, exit_on_error: bool = True) -> None:
    """Handle command results using console manager."""
    exit_code: int = 0
    if isinstance(result, Success):
        if result.message:
            console_manager.print_success(result.message)
        logger.debug("Success result, final exit_code: %s", exit_code)
    elif isinstance(result, Error):
        console_manager.print_error(result.error)
        if result.recovery_suggestions:
            console_manager.print_note(result.recovery_suggestions)
        if result.exception is not None:
            logger.debug("Error cause", exc_info=result.exception)
        exit_code = 1
        logger.debug("Error result, final exit_code: %s", exit_code)

    if exit_on_error:
        sys.exit(exit_code)


def _build_orchestrator(
    config: str | None, log_level: str | None
) -> RenewalOrchestrator:
    """Load settings, configure logging and wire the orchestrator."""
    try:
        settings = load_settings(Path(config) if config else None)
    except ConfigurationError as e:
        handle_result(
            Error(
                error=str(e),
                exception=e,
                recovery_suggestions="Run 'unifi-lego init_config' to create a "
                "configuration file",
            ),
            exit_on_error=False,
        )
        sys.exit(1)

    init_logging(log_level or settings.log_level)
    if settings.captive_enabled and settings.keystore.mode is KeystoreMode.LEAF_ONLY:
        console_manager.print_warning(NO_BUNDLE_WARNING)
    return RenewalOrchestrator.from_settings(settings)


def _restart_requested(ctx: click.Context, restart_services: bool) -> bool:
    """``--restart-services`` given either before or after the action."""
    return restart_services or bool((ctx.obj or {}).get("restart_services"))


@click.group(invoke_without_command=True)
@click.option(
    "--restart-services",
    is_flag=True,
    help="Force restart of services on initial or renew, even if the certificate "
    "was not renewed",
)
@click.pass_context
def cli(ctx: click.Context, restart_services: bool) -> None:
    """Obtain and deploy Let's Encrypt certificates on UniFi OS with lego."""
    ctx.ensure_object(dict)
    ctx.obj["restart_services"] = restart_services
    if ctx.invoked_subcommand is None:
        console_manager.print_error("No valid action provided.")
        console_manager.print(ctx.get_help(), markup=False)
        ctx.exit(1)


@cli.command(name="create_services")
@common_options(restart=False)
def create_services(config: str | None, log_level: str | None) -> None:
    """Force (re-)create the systemd service and timer for automated renewal."""
    orchestrator = _build_orchestrator(config, log_level)
    handle_result(orchestrator.create_services())


@cli.command(name="initial")
@common_options()
@click.pass_context
def initial(
    ctx: click.Context,
    config: str | None,
    log_level: str | None,
    restart_services: bool,
) -> None:
    """Generate a new certificate and set up the daily renewal timer."""
    orchestrator = _build_orchestrator(config, log_level)
    console_manager.print_processing("Attempting certificate generation")
    handle_result(
        orchestrator.initial(force_restart=_restart_requested(ctx, restart_services))
    )


@cli.command(name="install_lego")
@common_options(restart=False)
@click.option(
    "--force/--no-force",
    default=True,
    help="Reinstall lego even if the binary already exists (default: force)",
)
def install_lego(config: str | None, log_level: str | None, force: bool) -> None:
    """Force (re-)install lego, using lego.version from the configuration."""
    orchestrator = _build_orchestrator(config, log_level)
    handle_result(orchestrator.install_lego(force=force))


@cli.command(name="renew")
@common_options()
@click.pass_context
def renew(
    ctx: click.Context,
    config: str | None,
    log_level: str | None,
    restart_services: bool,
) -> None:
    """Renew the certificate if it is due for renewal."""
    orchestrator = _build_orchestrator(config, log_level)
    console_manager.print_processing("Attempting certificate renewal")
    handle_result(
        orchestrator.renew(force_restart=_restart_requested(ctx, restart_services))
    )


@cli.command(name="update_keystore")
@common_options(restart=False)
def update_keystore(config: str | None, log_level: str | None) -> None:
    """Update the keystore used by the captive portal and WiFiman.

    Imports either the full certificate chain (keystore.no_bundle false) or
    the server certificate only (keystore.no_bundle true). Services are
    always restarted afterwards.
    """
    orchestrator = _build_orchestrator(config, log_level)
    handle_result(orchestrator.update_keystore())


@cli.command(name="test_deploy")
@common_options(restart=False)
def test_deploy(config: str | None, log_level: str | None) -> None:
    """Deploy the current certificate if it was just issued, without restarts."""
    orchestrator = _build_orchestrator(config, log_level)
    handle_result(orchestrator.test_deploy())


@cli.command(name="init_config")
@click.option("--config", type=click.Path(), help="Configuration file path")
@click.option("--force", is_flag=True, help="Overwrite an existing configuration file")
def init_config(config: str | None, force: bool) -> None:
    """Write a configuration file with the default settings."""
    config_path = get_config_path(Path(config) if config else None)
    if config_path.exists() and not force:
        handle_result(
            Error(
                error=f"Configuration file already exists: {config_path}",
                recovery_suggestions="Use --force to overwrite",
            )
        )
        return

    defaults = default_config()
    try:
        save_yaml_config(
            defaults,
            config_path,
            comment="unifi-lego configuration\n"
            "Environment variables from unifi-lego.env override these values.",
        )
    except ValueError as e:
        handle_result(Error(error=str(e), exception=e))
        return

    console_manager.print_config_table(describe_settings(defaults))
    handle_result(Success(message=f"Created default config at {config_path}"))


def main() -> int:
    """Main entry point.

    Returns:
        int: Exit code (0 for success, non-zero for error)
    """
    try:
        init_logging()
        exit_code = cli.main(standalone_mode=False)
        return exit_code if isinstance(exit_code, int) else 0
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.exceptions.Abort:
        console_manager.print_error("Aborted")
        return 1
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1
    except Exception as e:
        handle_exception(e, exit_on_error=False)
        return 1


if __name__ == "__main__":
    sys.exit(main())
