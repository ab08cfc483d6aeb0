from __future__ import annotations

import abc
import copy
import logging
import subprocess
from dataclasses import dataclass, field, replace
from pathlib import Path

from vulkan_entrypoint.errors import AccountCommandError, SudoersWriteError


LOGGER = logging.getLogger("vulkan_entrypoint")
LOGGER.addHandler(logging.NullHandler())

DEFAULT_SUDOERS_DIR = Path("/etc/sudoers.d")


@dataclass(frozen=True)
class UserEntry:
    name: str
    uid: int
    gid: int
    home: str
    shell: str


@dataclass(frozen=True)
class GroupEntry:
    name: str
    gid: int


@dataclass
class AccountDirectorySnapshot:
    """Users and groups keyed by name, read once per run.

    Numeric lookups return the first entry in directory order, matching what
    ``getent passwd <uid>`` reports when a base image carries duplicates.
    """

    users: dict[str, UserEntry] = field(default_factory=dict)
    groups: dict[str, GroupEntry] = field(default_factory=dict)

    def user_by_uid(self, uid: int) -> UserEntry | None:
        for entry in self.users.values():
            if entry.uid == uid:
                return entry
        return None

    def group_by_gid(self, gid: int) -> GroupEntry | None:
        for entry in self.groups.values():
            if entry.gid == gid:
                return entry
        return None

    def user_exists(self, name: str) -> bool:
        return name in self.users

    def user(self, name: str) -> UserEntry | None:
        return self.users.get(name)

    def group(self, name: str) -> GroupEntry | None:
        return self.groups.get(name)

    def users_with_uid(self, uid: int) -> list[str]:
        return [entry.name for entry in self.users.values() if entry.uid == uid]

    def groups_with_gid(self, gid: int) -> list[str]:
        return [entry.name for entry in self.groups.values() if entry.gid == gid]

    def copy(self) -> AccountDirectorySnapshot:
        return AccountDirectorySnapshot(users=copy.copy(self.users), groups=copy.copy(self.groups))

    def add_group(self, name: str, gid: int) -> None:
        self.groups[name] = GroupEntry(name=name, gid=gid)

    def rename_group(self, old_name: str, new_name: str) -> None:
        entry = self.groups.pop(old_name)
        self.groups[new_name] = replace(entry, name=new_name)

    def add_user(self, name: str, uid: int, gid: int, home: str, shell: str) -> None:
        self.users[name] = UserEntry(name=name, uid=uid, gid=gid, home=home, shell=shell)

    def rename_user(self, old_name: str, new_name: str, home: str) -> None:
        entry = self.users.pop(old_name)
        self.users[new_name] = replace(entry, name=new_name, home=home)

    def update_user(self, name: str, **changes: object) -> None:
        self.users[name] = replace(self.users[name], **changes)


def parse_passwd(text: str) -> dict[str, UserEntry]:
    users: dict[str, UserEntry] = {}
    for line in text.splitlines():
        parts = line.strip().split(":")
        if len(parts) < 7 or not parts[0]:
            continue
        try:
            uid, gid = int(parts[2]), int(parts[3])
        except ValueError:
            continue
        users.setdefault(parts[0], UserEntry(name=parts[0], uid=uid, gid=gid, home=parts[5], shell=parts[6]))
    return users


def parse_group(text: str) -> dict[str, GroupEntry]:
    groups: dict[str, GroupEntry] = {}
    for line in text.splitlines():
        parts = line.strip().split(":")
        if len(parts) < 3 or not parts[0]:
            continue
        try:
            gid = int(parts[2])
        except ValueError:
            continue
        groups.setdefault(parts[0], GroupEntry(name=parts[0], gid=gid))
    return groups


class AccountDirectory(abc.ABC):
    """The host's user and group database.

    Numeric ids are the identity key; names are aliases. Implementations only
    provide ``snapshot`` and the write operations, lookups go through the
    snapshot.
    """

    @abc.abstractmethod
    def snapshot(self) -> AccountDirectorySnapshot:
        """Reads every user and group currently defined."""

    def lookup_user_by_uid(self, uid: int) -> UserEntry | None:
        return self.snapshot().user_by_uid(uid)

    def lookup_user_by_name(self, name: str) -> UserEntry | None:
        return self.snapshot().user(name)

    def lookup_group_by_gid(self, gid: int) -> GroupEntry | None:
        return self.snapshot().group_by_gid(gid)

    def lookup_group_by_name(self, name: str) -> GroupEntry | None:
        return self.snapshot().group(name)

    @abc.abstractmethod
    def create_group(self, name: str, gid: int) -> None:
        pass

    @abc.abstractmethod
    def rename_group(self, old_name: str, new_name: str) -> None:
        pass

    @abc.abstractmethod
    def create_user(self, name: str, *, uid: int, gid: int, shell: str, home: str) -> None:
        pass

    @abc.abstractmethod
    def rename_user(self, old_name: str, new_name: str, *, home: str) -> None:
        """Renames the account and points its home at ``home``.

        The old home is moved there unless ``home`` already exists.
        """

    @abc.abstractmethod
    def set_uid(self, name: str, uid: int) -> None:
        pass

    @abc.abstractmethod
    def set_gid(self, name: str, gid: int) -> None:
        pass

    @abc.abstractmethod
    def set_shell(self, name: str, shell: str) -> None:
        pass

    @abc.abstractmethod
    def set_password(self, name: str, password: str) -> None:
        pass

    @abc.abstractmethod
    def grant_sudo(self, name: str) -> None:
        """Grants passwordless sudo to ``name`` and nobody else."""


def _run(command: list[str], *, input_text: str | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=False, text=True, capture_output=True, input=input_text)


def _run_checked(command: list[str], *, input_text: str | None = None) -> subprocess.CompletedProcess[str]:
    result = _run(command, input_text=input_text)
    if result.returncode != 0:
        raise AccountCommandError(command, result.returncode, result.stderr or "")
    return result


class SystemAccountDirectory(AccountDirectory):
    """Backs the directory with getent and the shadow-utils commands."""

    def __init__(self, *, sudoers_dir: Path = DEFAULT_SUDOERS_DIR) -> None:
        self.sudoers_dir = sudoers_dir

    def snapshot(self) -> AccountDirectorySnapshot:
        passwd = _run_checked(["getent", "passwd"])
        group = _run_checked(["getent", "group"])
        return AccountDirectorySnapshot(users=parse_passwd(passwd.stdout), groups=parse_group(group.stdout))

    def create_group(self, name: str, gid: int) -> None:
        _run_checked(["groupadd", "--gid", str(gid), name])

    def rename_group(self, old_name: str, new_name: str) -> None:
        _run_checked(["groupmod", "--new-name", new_name, old_name])

    def create_user(self, name: str, *, uid: int, gid: int, shell: str, home: str) -> None:
        home_flag = "--no-create-home" if Path(home).exists() else "--create-home"
        _run_checked(
            [
                "useradd",
                "--uid",
                str(uid),
                "--gid",
                str(gid),
                "--home-dir",
                home,
                home_flag,
                "--shell",
                shell,
                name,
            ]
        )

    def rename_user(self, old_name: str, new_name: str, *, home: str) -> None:
        command = ["usermod", "--login", new_name, "--home", home]
        # usermod --move-home refuses an existing target, e.g. a mounted home volume.
        if not Path(home).exists():
            command.append("--move-home")
        command.append(old_name)
        _run_checked(command)

    def set_uid(self, name: str, uid: int) -> None:
        _run_checked(["usermod", "--uid", str(uid), name])

    def set_gid(self, name: str, gid: int) -> None:
        _run_checked(["usermod", "--gid", str(gid), name])

    def set_shell(self, name: str, shell: str) -> None:
        _run_checked(["usermod", "--shell", shell, name])

    def set_password(self, name: str, password: str) -> None:
        # chpasswd reads from stdin so the credential never shows up in argv.
        _run_checked(["chpasswd"], input_text=f"{name}:{password}\n")

    def grant_sudo(self, name: str) -> None:
        sudoers_file = self.sudoers_dir / f"90-{name}"
        rule = f"{name} ALL=(ALL:ALL) NOPASSWD:ALL\n"
        try:
            if sudoers_file.is_file() and sudoers_file.read_text() == rule:
                return
            self.sudoers_dir.mkdir(parents=True, exist_ok=True)
            sudoers_file.write_text(rule)
            sudoers_file.chmod(0o440)
        except OSError as exc:
            raise SudoersWriteError(sudoers_file, str(exc)) from exc
        LOGGER.debug("Wrote sudoers drop-in %s", sudoers_file)
