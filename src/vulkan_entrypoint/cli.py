from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import click

from vulkan_entrypoint.config import LOG_LEVEL_CHOICES, EntrypointConfig, load_config, normalize_log_level
from vulkan_entrypoint.directory import AccountDirectory, SystemAccountDirectory
from vulkan_entrypoint.errors import MissingCredential, ProvisioningError
from vulkan_entrypoint.ownership import StepResult, ensure_runtime_dirs, prepare_home, propagate_ownership
from vulkan_entrypoint.reconcile import (
    DesiredIdentity,
    ReconciliationOutcome,
    plan_reconciliation,
    reconcile,
)


DEFAULT_COMMAND = ("sleep", "infinity")

LOGGER = logging.getLogger("vulkan_entrypoint")
LOGGER.addHandler(logging.NullHandler())


def _configure_entrypoint_logging(level: str) -> None:
    normalized = normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def _account_directory() -> AccountDirectory:
    return SystemAccountDirectory()


def desired_identity(config: EntrypointConfig) -> DesiredIdentity:
    return DesiredIdentity(
        name=config.user_name,
        uid=config.user_uid,
        gid=config.user_gid,
        shell=config.user_shell,
        password=config.user_password,
        sudo_enabled=config.user_sudo,
    )


@dataclass(frozen=True)
class StartupResult:
    """What startup did: the reconciled account (if any) and every filesystem step."""

    outcome: ReconciliationOutcome | None
    steps: tuple[StepResult, ...] = ()

    @property
    def recovered(self) -> tuple[StepResult, ...]:
        return tuple(step for step in self.steps if not step.ok)


def provision_user(config: EntrypointConfig, directory: AccountDirectory) -> StartupResult:
    outcome = reconcile(
        directory,
        desired_identity(config),
        rename_allowed=config.user_rename,
        policy=config.user_strategy,
        autopick_range=config.autopick_range,
    )
    uid, gid = outcome.effective_uid, outcome.effective_gid
    steps = list(prepare_home(Path(outcome.home_dir), uid, gid))

    owned_paths = [Path(config.cache_dir)]
    if config.take_workspace:
        owned_paths.insert(0, Path(config.workspace_dir))
    steps.extend(propagate_ownership(owned_paths, uid, gid))
    return StartupResult(outcome=outcome, steps=tuple(steps))


def run_startup(config: EntrypointConfig, directory: AccountDirectory) -> StartupResult:
    runtime_steps = tuple(ensure_runtime_dirs(Path(config.workspace_dir), Path(config.cache_dir)))
    if not config.create_user:
        LOGGER.info("CREATE_USER is false; skipping account provisioning")
        return StartupResult(outcome=None, steps=runtime_steps)
    provisioned = provision_user(config, directory)
    return StartupResult(outcome=provisioned.outcome, steps=runtime_steps + provisioned.steps)


def _log_runtime_hints(env: Mapping[str, str], *, dri_path: Path = Path("/dev/dri")) -> None:
    if dri_path.is_dir():
        LOGGER.info("DRI present: %s mounted", dri_path)
    else:
        LOGGER.info("DRI not present (OK on NVIDIA with --gpus all)")
    for name, label in (("DISPLAY", "X11"), ("WAYLAND_DISPLAY", "Wayland"), ("VULKAN_SDK", "Vulkan SDK")):
        value = str(env.get(name) or "").strip()
        if value:
            LOGGER.info("%s %s=%s", label, name, value)


def _echo_plan(config: EntrypointConfig, directory: AccountDirectory) -> None:
    if not config.create_user:
        click.echo("CREATE_USER is false; no account changes planned.")
        return
    desired = desired_identity(config)
    if not desired.password:
        raise MissingCredential()
    desired.validate()
    plan = plan_reconciliation(
        desired,
        directory.snapshot(),
        rename_allowed=config.user_rename,
        policy=config.user_strategy,
        autopick_range=config.autopick_range,
    )
    click.echo(
        f"Account: name={plan.effective_name} uid={plan.effective_uid} gid={plan.effective_gid} "
        f"group={plan.group_name} home={plan.home_dir}"
    )
    if not plan.actions:
        click.echo("No account changes needed.")
    for action in plan.actions:
        click.echo(f"  {action.describe()}")


@click.command(
    help="Provision the container user, then exec COMMAND (default: sleep infinity).",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Logging verbosity. Defaults to ENTRYPOINT_LOG_LEVEL or info.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Print the planned account changes and exit without applying them.",
)
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def main(log_level: str | None, dry_run: bool, command: tuple[str, ...]) -> None:
    _configure_entrypoint_logging(log_level or "info")
    try:
        config = load_config(os.environ)
        if log_level is None:
            _configure_entrypoint_logging(config.log_level)
        LOGGER.info("%s", config.describe())
        directory = _account_directory()
        if dry_run:
            _echo_plan(config, directory)
            return
        startup = run_startup(config, directory)
    except ProvisioningError as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(exc.exit_code) from exc

    if startup.recovered:
        LOGGER.warning(
            "Startup continued past %d recovered step(s): %s",
            len(startup.recovered),
            ", ".join(f"{step.step} {step.path}" for step in startup.recovered),
        )
    _log_runtime_hints(os.environ)

    argv = list(command) or list(DEFAULT_COMMAND)
    LOGGER.info("Executing: %s", " ".join(argv))
    sys.stdout.flush()
    sys.stderr.flush()
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
