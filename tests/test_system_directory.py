from __future__ import annotations

import stat
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import vulkan_entrypoint.directory as directory_module
from vulkan_entrypoint.directory import GroupEntry, SystemAccountDirectory, UserEntry, parse_group, parse_passwd
from vulkan_entrypoint.errors import AccountCommandError, SudoersWriteError


PASSWD = """\
root:x:0:0:root:/root:/bin/bash
daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin
ubuntu:x:1000:1000:Ubuntu:/home/ubuntu:/bin/bash
broken-line
nobody:x:notanumber:65534::/nonexistent:/usr/sbin/nologin
"""

GROUP = """\
root:x:0:
sudo:x:27:ubuntu
ubuntu:x:1000:
bad:x:
"""


def _completed(command: list[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)


class ParseTests(unittest.TestCase):
    def test_parse_passwd_skips_malformed_lines(self) -> None:
        users = parse_passwd(PASSWD)

        self.assertEqual(list(users), ["root", "daemon", "ubuntu"])
        self.assertEqual(users["ubuntu"], UserEntry(name="ubuntu", uid=1000, gid=1000, home="/home/ubuntu", shell="/bin/bash"))

    def test_parse_group_skips_malformed_lines(self) -> None:
        groups = parse_group(GROUP)

        self.assertEqual(groups["sudo"], GroupEntry(name="sudo", gid=27))
        self.assertNotIn("bad", groups)


class SystemAccountDirectoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.commands: list[tuple[list[str], str | None]] = []
        self.responses: dict[str, subprocess.CompletedProcess[str]] = {}
        self.run_patcher = patch.object(directory_module, "_run", side_effect=self._fake_run)
        self.run_patcher.start()
        self.directory = SystemAccountDirectory(sudoers_dir=self.tmp_path / "sudoers.d")

    def tearDown(self) -> None:
        self.run_patcher.stop()
        self.tmp.cleanup()

    def _fake_run(self, command: list[str], *, input_text: str | None = None) -> subprocess.CompletedProcess[str]:
        self.commands.append((list(command), input_text))
        key = " ".join(command)
        return self.responses.get(key, _completed(command))

    def test_snapshot_reads_getent(self) -> None:
        self.responses["getent passwd"] = _completed(["getent", "passwd"], stdout=PASSWD)
        self.responses["getent group"] = _completed(["getent", "group"], stdout=GROUP)

        snapshot = self.directory.snapshot()

        self.assertEqual(snapshot.user_by_uid(1000).name, "ubuntu")
        self.assertEqual(snapshot.group_by_gid(27).name, "sudo")
        self.assertTrue(snapshot.user_exists("daemon"))
        self.assertIsNone(snapshot.user_by_uid(4242))
        self.assertEqual(self.directory.lookup_group_by_name("ubuntu").gid, 1000)

    def test_create_user_creates_home_when_missing(self) -> None:
        home = self.tmp_path / "home" / "dev"

        self.directory.create_user("dev", uid=1000, gid=1000, shell="/bin/bash", home=str(home))

        self.assertEqual(
            self.commands[-1][0],
            [
                "useradd",
                "--uid",
                "1000",
                "--gid",
                "1000",
                "--home-dir",
                str(home),
                "--create-home",
                "--shell",
                "/bin/bash",
                "dev",
            ],
        )

    def test_create_user_reuses_existing_home(self) -> None:
        home = self.tmp_path / "dev"
        home.mkdir()

        self.directory.create_user("dev", uid=1000, gid=1000, shell="/bin/bash", home=str(home))

        self.assertIn("--no-create-home", self.commands[-1][0])

    def test_rename_user_keeps_existing_home_in_place(self) -> None:
        home = self.tmp_path / "dev"
        home.mkdir()

        self.directory.rename_user("ubuntu", "dev", home=str(home))

        self.assertEqual(self.commands[-1][0], ["usermod", "--login", "dev", "--home", str(home), "ubuntu"])

    def test_write_commands(self) -> None:
        self.directory.create_group("dev", 1000)
        self.directory.rename_group("ubuntu", "dev")
        self.directory.rename_user("ubuntu", "dev", home=str(self.tmp_path / "home" / "dev"))
        self.directory.set_uid("dev", 1000)
        self.directory.set_gid("dev", 1000)
        self.directory.set_shell("dev", "/bin/zsh")

        self.assertEqual(
            [command for command, _ in self.commands],
            [
                ["groupadd", "--gid", "1000", "dev"],
                ["groupmod", "--new-name", "dev", "ubuntu"],
                ["usermod", "--login", "dev", "--home", str(self.tmp_path / "home" / "dev"), "--move-home", "ubuntu"],
                ["usermod", "--uid", "1000", "dev"],
                ["usermod", "--gid", "1000", "dev"],
                ["usermod", "--shell", "/bin/zsh", "dev"],
            ],
        )

    def test_set_password_uses_stdin(self) -> None:
        self.directory.set_password("dev", "s3cret")

        command, input_text = self.commands[-1]
        self.assertEqual(command, ["chpasswd"])
        self.assertEqual(input_text, "dev:s3cret\n")
        self.assertNotIn("s3cret", " ".join(command))

    def test_failed_command_raises_account_command_error(self) -> None:
        self.responses["groupadd --gid 1000 dev"] = _completed(
            ["groupadd", "--gid", "1000", "dev"],
            returncode=4,
            stderr="groupadd: GID '1000' already exists\n",
        )

        with self.assertRaises(AccountCommandError) as ctx:
            self.directory.create_group("dev", 1000)

        self.assertEqual(ctx.exception.returncode, 4)
        self.assertEqual(ctx.exception.exit_code, 70)
        self.assertIn("already exists", str(ctx.exception))

    def test_grant_sudo_writes_single_account_drop_in(self) -> None:
        self.directory.grant_sudo("dev")

        sudoers_file = self.tmp_path / "sudoers.d" / "90-dev"
        self.assertEqual(sudoers_file.read_text(), "dev ALL=(ALL:ALL) NOPASSWD:ALL\n")
        self.assertEqual(stat.S_IMODE(sudoers_file.stat().st_mode), 0o440)
        self.assertEqual([path.name for path in sudoers_file.parent.iterdir()], ["90-dev"])

    def test_grant_sudo_write_failure_is_a_named_error(self) -> None:
        blocker = self.tmp_path / "not-a-dir"
        blocker.write_text("")
        directory = SystemAccountDirectory(sudoers_dir=blocker)

        with self.assertRaises(SudoersWriteError) as ctx:
            directory.grant_sudo("dev")

        self.assertEqual(ctx.exception.exit_code, 73)
        self.assertIn("90-dev", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
