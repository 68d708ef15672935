import logging
import os
from datetime import datetime

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_INTER_TARGET_PAUSE,
    DEFAULT_LOG_TEMPLATE,
    DEFAULT_PACKAGE_WAIT_TIMEOUT,
    DEFAULT_PVE_ROOT,
    DEFAULT_SSH_CONNECT_TIMEOUT,
    DEFAULT_SSH_USER,
    TIMESTAMP_FORMAT,
)
from .core import LxcUpgrader, UpgraderError
from .models import RunConfig, SecurityMode
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command(
    epilog=(
        "Examples: lxc-upgrade --dry-run | lxc-upgrade --security-mode custom 301 | "
        "lxc-upgrade -f --skip-backup 301"
    )
)
@click.argument("vmids", nargs=-1, type=int)
@click.option("-n", "--dry-run", is_flag=True, default=None, help="Show what would be done without executing.")
@click.option("-f", "--force", is_flag=True, default=None, help="Skip the confirmation prompt.")
@click.option(
    "-s",
    "--skip-backup",
    is_flag=True,
    default=None,
    help="Skip backup creation (not recommended).",
)
@click.option(
    "--security-mode",
    type=click.Choice([mode.value for mode in SecurityMode]),
    default=None,
    help="AppArmor security mode (default: unconfined).",
)
@click.option("--pool", required=False, help="Resource pool to upgrade. Prompted for when omitted.")
@click.option("--storage", required=False, help="Backup storage for vzdump. Prompted for when omitted.")
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--log-file", type=click.Path(), help="Path to log file (default: /tmp/lxc-upgrade-<timestamp>.log).")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging and show command output.")
def main(vmids, dry_run, force, skip_backup, security_mode, pool, storage, config, log_file, verbose):
    """Upgrade LXC containers from Debian 12 to Debian 13 on a Proxmox node.

    VMIDS optionally restrict the run to the given container ids.
    """
    logger = logging.getLogger("lxcupgrader")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file") or DEFAULT_LOG_TEMPLATE.format(
        timestamp=datetime.now().strftime(TIMESTAMP_FORMAT)
    )

    try:
        security = SecurityMode(
            _resolve_option(security_mode, config_values, "security_mode", default=SecurityMode.UNCONFINED.value)
        )
    except ValueError as exc:
        raise click.ClickException("Invalid security mode. Use 'unconfined' or 'custom'.") from exc

    try:
        run_config = RunConfig(
            dry_run=bool(_resolve_option(dry_run, config_values, "dry_run", default=False)),
            force=bool(_resolve_option(force, config_values, "force", default=False)),
            skip_backup=bool(_resolve_option(skip_backup, config_values, "skip_backup", default=False)),
            security_mode=security,
            target_ids=tuple(vmids),
            resource_pool=_resolve_option(pool, config_values, "resource_pool"),
            backup_storage=_resolve_option(storage, config_values, "backup_storage"),
            ssh_user=str(_resolve_option(None, config_values, "ssh_user", default=DEFAULT_SSH_USER)),
            ssh_connect_timeout=int(
                _resolve_option(None, config_values, "ssh_connect_timeout", default=DEFAULT_SSH_CONNECT_TIMEOUT)
            ),
            package_wait_timeout=int(
                _resolve_option(None, config_values, "package_wait_timeout", default=DEFAULT_PACKAGE_WAIT_TIMEOUT)
            ),
            inter_target_pause=float(
                _resolve_option(None, config_values, "inter_target_pause", default=DEFAULT_INTER_TARGET_PAUSE)
            ),
            pve_root=str(_resolve_option(None, config_values, "pve_root", default=DEFAULT_PVE_ROOT)),
            log_file=log_file,
        )
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration value: {exc}") from exc

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    try:
        file_handler = logging.FileHandler(log_file)
    except OSError as exc:
        raise click.ClickException(f"Could not open log file '{log_file}': {exc}") from exc
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(file_handler)

    upgrader = LxcUpgrader(config=run_config, verbose=verbose)
    raise SystemExit(upgrader.run())


def run(argv=None):
    """Console entry point; usage errors exit with status 1."""
    try:
        main.main(args=argv, prog_name="lxc-upgrade", standalone_mode=False)
    except click.ClickException as exc:
        exc.show()
        raise SystemExit(1) from exc
    except click.exceptions.Abort as exc:
        click.echo("Aborted!", err=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    run()
