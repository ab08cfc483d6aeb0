from __future__ import annotations


EXIT_MISSING_CREDENTIAL = 64
EXIT_UID_CONFLICT = 65
EXIT_NO_FREE_UID = 66
EXIT_NO_FREE_GID = 67
EXIT_ACCOUNT_COMMAND = 70
EXIT_SUDOERS_WRITE = 73
EXIT_CONFIG = 78


class ProvisioningError(RuntimeError):
    """Fatal entrypoint failure. Aborts startup with ``exit_code``."""

    exit_code = 1


class ConfigError(ProvisioningError):
    exit_code = EXIT_CONFIG


class MissingCredential(ProvisioningError):
    exit_code = EXIT_MISSING_CREDENTIAL

    def __init__(self, field: str = "USER_PASSWORD") -> None:
        super().__init__(f"CREATE_USER=true but {field} is empty. Refusing to start.")
        self.field = field


class UidConflict(ProvisioningError):
    exit_code = EXIT_UID_CONFLICT

    def __init__(self, uid: int, existing_name: str, desired_name: str) -> None:
        super().__init__(
            f"USER_UID={uid} is already bound to account {existing_name!r} "
            f"(wanted {desired_name!r}) and the collision strategy refuses to resolve it."
        )
        self.uid = uid
        self.existing_name = existing_name
        self.desired_name = desired_name


class NoFreeUid(ProvisioningError):
    exit_code = EXIT_NO_FREE_UID

    def __init__(self, first: int, last: int) -> None:
        super().__init__(f"USER_STRATEGY=autopick found no free uid in range {first}-{last}.")
        self.first = first
        self.last = last


class NoFreeGid(ProvisioningError):
    exit_code = EXIT_NO_FREE_GID

    def __init__(self, first: int, last: int) -> None:
        super().__init__(f"USER_STRATEGY=autopick found no free gid in range {first}-{last}.")
        self.first = first
        self.last = last


class AccountCommandError(ProvisioningError):
    exit_code = EXIT_ACCOUNT_COMMAND

    def __init__(self, command: list[str], returncode: int, stderr: str) -> None:
        detail = stderr.strip() or "no output"
        super().__init__(
            f"Account command failed with exit code {returncode}: {' '.join(command)} ({detail})"
        )
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr


class SudoersWriteError(ProvisioningError):
    exit_code = EXIT_SUDOERS_WRITE

    def __init__(self, path: object, detail: str) -> None:
        super().__init__(f"Cannot write sudoers drop-in {path} (USER_SUDO=true): {detail}")
        self.path = str(path)
        self.detail = detail
