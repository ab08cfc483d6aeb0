from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from vulkan_entrypoint.directory import AccountDirectory, AccountDirectorySnapshot, UserEntry
from vulkan_entrypoint.errors import (
    AccountCommandError,
    ConfigError,
    MissingCredential,
    NoFreeGid,
    NoFreeUid,
    UidConflict,
)


LOGGER = logging.getLogger("vulkan_entrypoint")
LOGGER.addHandler(logging.NullHandler())

DEFAULT_AUTOPICK_RANGE = (1001, 1999)
# UID_MIN from login.defs; accounts below it belong to the base system.
LOGIN_UID_MIN = 1000

_ACCOUNT_NAME_PATTERN = re.compile(r"^[^:\s]+$")


class CollisionPolicy(str, Enum):
    RENAME = "rename"
    REUSE = "reuse"
    FAIL = "fail"
    AUTOPICK = "autopick"


class ActionKind(str, Enum):
    CREATE_GROUP = "createGroup"
    RENAME_GROUP = "renameGroup"
    CREATE_USER = "createUser"
    RENAME_USER = "renameUser"
    CHANGE_UID = "changeUid"
    CHANGE_GID = "changeGid"
    CHANGE_SHELL = "changeShell"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    name: str
    new_name: str = ""
    uid: int | None = None
    gid: int | None = None
    shell: str = ""
    home: str = ""

    def describe(self) -> str:
        parts = [self.kind.value, f"name={self.name!r}"]
        if self.new_name:
            parts.append(f"new_name={self.new_name!r}")
        if self.uid is not None:
            parts.append(f"uid={self.uid}")
        if self.gid is not None:
            parts.append(f"gid={self.gid}")
        if self.shell:
            parts.append(f"shell={self.shell}")
        if self.home:
            parts.append(f"home={self.home}")
        return " ".join(parts)


@dataclass(frozen=True)
class DesiredIdentity:
    name: str
    uid: int
    gid: int
    shell: str = "/bin/bash"
    password: str = ""
    sudo_enabled: bool = False

    @property
    def home_dir(self) -> str:
        return f"/home/{self.name}"

    def validate(self) -> None:
        if not _ACCOUNT_NAME_PATTERN.match(self.name or ""):
            raise ConfigError(f"Invalid USER_NAME: {self.name!r} (must be non-empty without ':' or whitespace)")
        if self.uid < 0:
            raise ConfigError(f"Invalid USER_UID: {self.uid} (must be non-negative)")
        if self.gid < 0:
            raise ConfigError(f"Invalid USER_GID: {self.gid} (must be non-negative)")


@dataclass(frozen=True)
class ReconciliationPlan:
    effective_name: str
    effective_uid: int
    effective_gid: int
    group_name: str
    home_dir: str
    actions: tuple[Action, ...]
    policy: CollisionPolicy | None = None


@dataclass(frozen=True)
class ReconciliationOutcome:
    effective_name: str
    effective_uid: int
    effective_gid: int
    group_name: str
    home_dir: str
    actions_taken: tuple[Action, ...] = ()


def _first_free(used: Iterable[int], id_range: tuple[int, int]) -> int | None:
    taken = set(used)
    first, last = id_range
    for candidate in range(first, last + 1):
        if candidate not in taken:
            return candidate
    return None


def _resolve_collision(
    state: AccountDirectorySnapshot,
    desired: DesiredIdentity,
    owner: UserEntry,
    named: UserEntry | None,
    *,
    policy: CollisionPolicy,
    autopick_range: tuple[int, int],
) -> tuple[str, int, int | None]:
    """Returns (effective name, effective uid, gid override) for a uid collision."""
    if policy is CollisionPolicy.REUSE:
        LOGGER.info("Reusing existing account %r for uid=%d instead of %r", owner.name, desired.uid, desired.name)
        return owner.name, desired.uid, None

    if policy is CollisionPolicy.AUTOPICK:
        # The colliding account's private group must not become ours as well.
        shares_primary_group = owner.gid == desired.gid
        if named is not None:
            LOGGER.info("Keeping existing account %r at uid=%d (uid=%d belongs to %r)", named.name, named.uid, desired.uid, owner.name)
            return named.name, named.uid, named.gid if shares_primary_group else None

        picked_uid = _first_free((entry.uid for entry in state.users.values()), autopick_range)
        if picked_uid is None:
            raise NoFreeUid(*autopick_range)
        picked_gid = None
        if shares_primary_group:
            picked_gid = _first_free((entry.gid for entry in state.groups.values()), autopick_range)
            if picked_gid is None:
                raise NoFreeGid(*autopick_range)
        LOGGER.info(
            "uid=%d belongs to %r; picked uid=%d%s for %r",
            desired.uid,
            owner.name,
            picked_uid,
            f" gid={picked_gid}" if picked_gid is not None else "",
            desired.name,
        )
        return desired.name, picked_uid, picked_gid

    raise UidConflict(desired.uid, owner.name, desired.name)


def plan_reconciliation(
    desired: DesiredIdentity,
    snapshot: AccountDirectorySnapshot,
    *,
    rename_allowed: bool = True,
    policy: CollisionPolicy = CollisionPolicy.REUSE,
    autopick_range: tuple[int, int] = DEFAULT_AUTOPICK_RANGE,
) -> ReconciliationPlan:
    """Computes the actions that bind ``desired`` into ``snapshot``.

    Planning runs against a private copy of the snapshot, so the caller's
    snapshot is never modified and policy errors surface before any write.
    """
    state = snapshot.copy()
    actions: list[Action] = []
    applied_policy: CollisionPolicy | None = None
    rename_allowed = rename_allowed or policy is CollisionPolicy.RENAME

    effective_name = desired.name
    effective_uid = desired.uid
    gid_override: int | None = None

    owner = state.user_by_uid(desired.uid)
    named = state.user(desired.name)
    if owner is not None and owner.name != desired.name:
        system_owner = owner.uid < LOGIN_UID_MIN
        if rename_allowed and named is None and not system_owner:
            applied_policy = CollisionPolicy.RENAME
            new_home = desired.home_dir
            actions.append(Action(ActionKind.RENAME_USER, owner.name, new_name=desired.name, uid=owner.uid, home=new_home))
            state.rename_user(owner.name, desired.name, new_home)
            primary_group = state.group(owner.name)
            if primary_group is not None and primary_group.gid == owner.gid and state.group(desired.name) is None:
                actions.append(Action(ActionKind.RENAME_GROUP, owner.name, new_name=desired.name, gid=owner.gid))
                state.rename_group(owner.name, desired.name)
            else:
                LOGGER.debug("No private group %r to rename alongside account %r", owner.name, owner.name)
        else:
            if rename_allowed and system_owner:
                LOGGER.warning(
                    "Refusing to rename system account %r (uid=%d < %d) to %r; falling back to strategy=%s",
                    owner.name,
                    owner.uid,
                    LOGIN_UID_MIN,
                    desired.name,
                    policy.value,
                )
            elif rename_allowed and named is not None:
                LOGGER.warning(
                    "Cannot rename %r to %r: account %r already exists with uid=%d; falling back to strategy=%s",
                    owner.name,
                    desired.name,
                    desired.name,
                    named.uid,
                    policy.value,
                )
            applied_policy = policy
            effective_name, effective_uid, gid_override = _resolve_collision(
                state,
                desired,
                owner,
                named,
                policy=policy,
                autopick_range=autopick_range,
            )

    target_gid = desired.gid if gid_override is None else gid_override
    gid_group = state.group_by_gid(target_gid)
    if gid_group is not None:
        group_name = gid_group.name
        effective_gid = target_gid
        if group_name != effective_name:
            LOGGER.info("Reusing existing group gid=%d name=%r", target_gid, group_name)
    else:
        name_group = state.group(effective_name)
        if name_group is None:
            actions.append(Action(ActionKind.CREATE_GROUP, effective_name, gid=target_gid))
            state.add_group(effective_name, target_gid)
            group_name = effective_name
            effective_gid = target_gid
        else:
            LOGGER.warning(
                "Group %r already exists with gid=%d; overriding desired gid=%d",
                name_group.name,
                name_group.gid,
                target_gid,
            )
            group_name = name_group.name
            effective_gid = name_group.gid

    account = state.user(effective_name)
    if account is None:
        home = f"/home/{effective_name}"
        actions.append(
            Action(
                ActionKind.CREATE_USER,
                effective_name,
                uid=effective_uid,
                gid=effective_gid,
                shell=desired.shell,
                home=home,
            )
        )
        state.add_user(effective_name, effective_uid, effective_gid, home, desired.shell)
    else:
        if account.uid != effective_uid:
            actions.append(Action(ActionKind.CHANGE_UID, effective_name, uid=effective_uid))
            state.update_user(effective_name, uid=effective_uid)
        if account.gid != effective_gid:
            if state.group_by_gid(effective_gid) is not None:
                actions.append(Action(ActionKind.CHANGE_GID, effective_name, gid=effective_gid))
                state.update_user(effective_name, gid=effective_gid)
            else:
                LOGGER.warning("Leaving gid=%d for %r: no group holds gid=%d", account.gid, effective_name, effective_gid)
        if account.shell != desired.shell:
            actions.append(Action(ActionKind.CHANGE_SHELL, effective_name, shell=desired.shell))
            state.update_user(effective_name, shell=desired.shell)

    final = state.users[effective_name]
    return ReconciliationPlan(
        effective_name=effective_name,
        effective_uid=final.uid,
        effective_gid=final.gid,
        group_name=group_name,
        home_dir=final.home,
        actions=tuple(actions),
        policy=applied_policy,
    )


def _apply_action(directory: AccountDirectory, action: Action) -> bool:
    kind = action.kind
    if kind is ActionKind.CREATE_GROUP:
        directory.create_group(action.name, action.gid)
    elif kind is ActionKind.RENAME_GROUP:
        try:
            directory.rename_group(action.name, action.new_name)
        except AccountCommandError as exc:
            LOGGER.warning("Group rename %r -> %r failed, continuing: %s", action.name, action.new_name, exc)
            return False
    elif kind is ActionKind.CREATE_USER:
        directory.create_user(action.name, uid=action.uid, gid=action.gid, shell=action.shell, home=action.home)
    elif kind is ActionKind.RENAME_USER:
        directory.rename_user(action.name, action.new_name, home=action.home)
    elif kind is ActionKind.CHANGE_UID:
        directory.set_uid(action.name, action.uid)
    elif kind is ActionKind.CHANGE_GID:
        directory.set_gid(action.name, action.gid)
    elif kind is ActionKind.CHANGE_SHELL:
        directory.set_shell(action.name, action.shell)
    else:
        raise ValueError(f"Unknown account action: {kind!r}")
    return True


def reconcile(
    directory: AccountDirectory,
    desired: DesiredIdentity,
    *,
    rename_allowed: bool = True,
    policy: CollisionPolicy = CollisionPolicy.REUSE,
    autopick_range: tuple[int, int] = DEFAULT_AUTOPICK_RANGE,
) -> ReconciliationOutcome:
    """Converges ``directory`` to one consistent account for ``desired``.

    The credential check happens before the directory is even read. A second
    run with the same input against the resulting directory plans no actions.
    """
    if not desired.password:
        raise MissingCredential()
    desired.validate()

    plan = plan_reconciliation(
        desired,
        directory.snapshot(),
        rename_allowed=rename_allowed,
        policy=policy,
        autopick_range=autopick_range,
    )
    if not plan.actions:
        LOGGER.info("Account %r already consistent (uid=%d, gid=%d)", plan.effective_name, plan.effective_uid, plan.effective_gid)

    taken: list[Action] = []
    for action in plan.actions:
        if _apply_action(directory, action):
            LOGGER.info("Applied %s", action.describe())
            taken.append(action)

    directory.set_password(plan.effective_name, desired.password)
    LOGGER.info("Set password for %s (masked)", plan.effective_name)
    if desired.sudo_enabled:
        directory.grant_sudo(plan.effective_name)
        LOGGER.info("Granted sudo (NOPASSWD) to %s", plan.effective_name)

    return ReconciliationOutcome(
        effective_name=plan.effective_name,
        effective_uid=plan.effective_uid,
        effective_gid=plan.effective_gid,
        group_name=plan.group_name,
        home_dir=plan.home_dir,
        actions_taken=tuple(taken),
    )
