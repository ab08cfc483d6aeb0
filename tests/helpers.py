from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from vulkan_entrypoint.directory import AccountDirectory, AccountDirectorySnapshot
from vulkan_entrypoint.errors import AccountCommandError


CREDENTIAL_CALLS = {"set_password", "grant_sudo"}


class InMemoryAccountDirectory(AccountDirectory):
    def __init__(
        self,
        users: Iterable[tuple[str, int, int]] = (),
        groups: Iterable[tuple[str, int]] = (),
        *,
        shell: str = "/bin/bash",
    ) -> None:
        self.state = AccountDirectorySnapshot()
        for name, gid in groups:
            self.state.add_group(name, gid)
        for name, uid, gid in users:
            home = "/root" if uid == 0 else f"/home/{name}"
            self.state.add_user(name, uid, gid, home, shell)
        self.calls: list[tuple[object, ...]] = []
        self.snapshot_reads = 0
        self.passwords: dict[str, str] = {}
        self.sudoers: set[str] = set()
        self.fail_group_rename = False

    @property
    def structural_calls(self) -> list[tuple[object, ...]]:
        return [call for call in self.calls if call[0] not in CREDENTIAL_CALLS]

    def snapshot(self) -> AccountDirectorySnapshot:
        self.snapshot_reads += 1
        return self.state.copy()

    def create_group(self, name: str, gid: int) -> None:
        self.calls.append(("create_group", name, gid))
        self.state.add_group(name, gid)

    def rename_group(self, old_name: str, new_name: str) -> None:
        self.calls.append(("rename_group", old_name, new_name))
        if self.fail_group_rename:
            raise AccountCommandError(["groupmod", "--new-name", new_name, old_name], 6, "group does not exist")
        self.state.rename_group(old_name, new_name)

    def create_user(self, name: str, *, uid: int, gid: int, shell: str, home: str) -> None:
        self.calls.append(("create_user", name, uid, gid))
        self.state.add_user(name, uid, gid, home, shell)

    def rename_user(self, old_name: str, new_name: str, *, home: str) -> None:
        self.calls.append(("rename_user", old_name, new_name))
        self.state.rename_user(old_name, new_name, home)

    def set_uid(self, name: str, uid: int) -> None:
        self.calls.append(("set_uid", name, uid))
        self.state.update_user(name, uid=uid)

    def set_gid(self, name: str, gid: int) -> None:
        self.calls.append(("set_gid", name, gid))
        self.state.update_user(name, gid=gid)

    def set_shell(self, name: str, shell: str) -> None:
        self.calls.append(("set_shell", name, shell))
        self.state.update_user(name, shell=shell)

    def set_password(self, name: str, password: str) -> None:
        self.calls.append(("set_password", name))
        self.passwords[name] = password

    def grant_sudo(self, name: str) -> None:
        self.calls.append(("grant_sudo", name))
        self.sudoers.add(name)


def ubuntu_base_directory() -> InMemoryAccountDirectory:
    """Accounts of a stock ubuntu:24.04 image: root plus ``ubuntu`` at 1000."""
    return InMemoryAccountDirectory(
        users=[("root", 0, 0), ("ubuntu", 1000, 1000)],
        groups=[("root", 0), ("users", 100), ("ubuntu", 1000)],
    )
