from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping

from vulkan_entrypoint.errors import ConfigError
from vulkan_entrypoint.reconcile import DEFAULT_AUTOPICK_RANGE, CollisionPolicy


TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
FALSE_VALUES = frozenset({"false", "0", "no", "off"})
STRATEGY_CHOICES = {
    "reuse": CollisionPolicy.REUSE,
    "fail": CollisionPolicy.FAIL,
    "autopick": CollisionPolicy.AUTOPICK,
}
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")

DEFAULT_USER_NAME = "dev"
DEFAULT_USER_UID = 1000
DEFAULT_USER_GID = 1000
DEFAULT_USER_SHELL = "/bin/bash"
DEFAULT_WORKSPACE_DIR = "/workspace"
DEFAULT_CACHE_DIR = "/opt/cache/ccache"

_ACCOUNT_NAME_PATTERN = re.compile(r"^[^:\s]+$")
_ID_PATTERN = re.compile(r"^[0-9]+$")
_RANGE_PATTERN = re.compile(r"^\s*([0-9]+)\s*-\s*([0-9]+)\s*$")


def parse_bool(raw_value: str | None, *, name: str, default: bool) -> bool:
    value = str(raw_value or "").strip().lower()
    if not value:
        return default
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ConfigError(
        f"Invalid boolean for {name}: {raw_value!r} "
        "(expected one of true/1/yes/on or false/0/no/off)"
    )


def parse_id(raw_value: str | None, *, name: str, default: int) -> int:
    value = str(raw_value or "").strip()
    if not value:
        return default
    if not _ID_PATTERN.match(value):
        raise ConfigError(f"Invalid {name}: {raw_value!r} (expected a non-negative integer)")
    return int(value)


def parse_account_name(raw_value: str | None, *, name: str, default: str) -> str:
    value = str(raw_value or "").strip() or default
    if not _ACCOUNT_NAME_PATTERN.match(value):
        raise ConfigError(f"Invalid {name}: {value!r} (must not contain ':' or whitespace)")
    return value


def parse_strategy(raw_value: str | None) -> CollisionPolicy:
    value = str(raw_value or "").strip().lower() or "reuse"
    try:
        return STRATEGY_CHOICES[value]
    except KeyError:
        choices = ", ".join(STRATEGY_CHOICES)
        raise ConfigError(f"Invalid USER_STRATEGY: {raw_value!r} (expected one of: {choices})") from None


def parse_id_range(raw_value: str | None) -> tuple[int, int]:
    value = str(raw_value or "").strip()
    if not value:
        return DEFAULT_AUTOPICK_RANGE
    match = _RANGE_PATTERN.match(value)
    if match is None:
        raise ConfigError(f"Invalid USER_AUTOPICK_RANGE: {raw_value!r} (expected <min>-<max>)")
    first, last = int(match.group(1)), int(match.group(2))
    if first > last:
        raise ConfigError(f"Invalid USER_AUTOPICK_RANGE: {raw_value!r} (min is greater than max)")
    return first, last


def normalize_log_level(value: object) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return "info"


@dataclass(frozen=True)
class EntrypointConfig:
    create_user: bool = False
    user_name: str = DEFAULT_USER_NAME
    user_uid: int = DEFAULT_USER_UID
    user_gid: int = DEFAULT_USER_GID
    user_password: str = ""
    user_sudo: bool = True
    user_shell: str = DEFAULT_USER_SHELL
    take_workspace: bool = True
    user_rename: bool = True
    user_strategy: CollisionPolicy = CollisionPolicy.REUSE
    autopick_range: tuple[int, int] = DEFAULT_AUTOPICK_RANGE
    workspace_dir: str = DEFAULT_WORKSPACE_DIR
    cache_dir: str = DEFAULT_CACHE_DIR
    log_level: str = "info"

    def describe(self) -> str:
        """Non-secret summary for the startup log."""
        return (
            f"CREATE_USER={self.create_user} USER_NAME={self.user_name} "
            f"USER_UID={self.user_uid} USER_GID={self.user_gid} USER_SUDO={self.user_sudo} "
            f"USER_SHELL={self.user_shell} TAKE_WORKSPACE={self.take_workspace} "
            f"USER_RENAME={self.user_rename} USER_STRATEGY={self.user_strategy.value} "
            f"WORKSPACE_DIR={self.workspace_dir} CCACHE_DIR={self.cache_dir}"
        )


def load_config(env: Mapping[str, str]) -> EntrypointConfig:
    """Read the entrypoint configuration from ``env``.

    Every value is parsed strictly here, once. Unrecognized booleans,
    negative or non-numeric ids and unknown strategies raise ``ConfigError``
    instead of falling back to a default.
    """
    return EntrypointConfig(
        create_user=parse_bool(env.get("CREATE_USER"), name="CREATE_USER", default=False),
        user_name=parse_account_name(env.get("USER_NAME"), name="USER_NAME", default=DEFAULT_USER_NAME),
        user_uid=parse_id(env.get("USER_UID"), name="USER_UID", default=DEFAULT_USER_UID),
        user_gid=parse_id(env.get("USER_GID"), name="USER_GID", default=DEFAULT_USER_GID),
        user_password=str(env.get("USER_PASSWORD") or ""),
        user_sudo=parse_bool(env.get("USER_SUDO"), name="USER_SUDO", default=True),
        user_shell=str(env.get("USER_SHELL") or "").strip() or DEFAULT_USER_SHELL,
        take_workspace=parse_bool(env.get("TAKE_WORKSPACE"), name="TAKE_WORKSPACE", default=True),
        user_rename=parse_bool(env.get("USER_RENAME"), name="USER_RENAME", default=True),
        user_strategy=parse_strategy(env.get("USER_STRATEGY")),
        autopick_range=parse_id_range(env.get("USER_AUTOPICK_RANGE")),
        workspace_dir=str(env.get("WORKSPACE_DIR") or "").strip() or DEFAULT_WORKSPACE_DIR,
        cache_dir=str(env.get("CCACHE_DIR") or "").strip() or DEFAULT_CACHE_DIR,
        log_level=normalize_log_level(env.get("ENTRYPOINT_LOG_LEVEL")),
    )
