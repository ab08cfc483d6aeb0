from __future__ import annotations

import getpass
import os
import pwd
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping


LEVEL_OK = "ok"
LEVEL_WARN = "warn"
LEVEL_ERROR = "error"

GPU_NVIDIA = "nvidia"
GPU_AMD = "amd"
GPU_INTEL = "intel"
GPU_UNKNOWN = "unknown"

REQUIRED_TOOLS = ("bash", "id", "lspci", "grep", "awk", "sed", "xhost")
X11_SOCKET_DIR = Path("/tmp/.X11-unix")
DRI_PATH = Path("/dev/dri")
DEFAULT_WAYLAND_DISPLAY = "wayland-0"

_NVIDIA_PATTERN = re.compile(r"nvidia", re.IGNORECASE)
# Whole words only: "Corporation" must not count as ATI.
_AMD_PATTERN = re.compile(r"\b(amd|ati)\b", re.IGNORECASE)
_INTEL_PATTERN = re.compile(r"intel", re.IGNORECASE)


@dataclass(frozen=True)
class CheckResult:
    level: str
    message: str
    hint: str = ""

    @property
    def failed(self) -> bool:
        return self.level == LEVEL_ERROR


@dataclass
class HostReport:
    gpu: str = GPU_UNKNOWN
    real_user: str = ""
    real_uid: int | None = None
    wayland_socket: Path | None = None
    x11_socket_dir: Path = X11_SOCKET_DIR
    toolkit_installed: bool | None = None
    results: list[CheckResult] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(result.failed for result in self.results)

    def add(self, result: CheckResult) -> CheckResult:
        self.results.append(result)
        return result


def _run(command: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(command, check=False, text=True, capture_output=True)
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, stdout="", stderr=str(exc))


def _run_ok(command: list[str]) -> bool:
    return _run(command).returncode == 0


def detect_gpu_vendor(lspci_output: str) -> str:
    """Picks the GPU vendor from ``lspci`` output, NVIDIA first."""
    if _NVIDIA_PATTERN.search(lspci_output):
        return GPU_NVIDIA
    if _AMD_PATTERN.search(lspci_output):
        return GPU_AMD
    if _INTEL_PATTERN.search(lspci_output):
        return GPU_INTEL
    return GPU_UNKNOWN


def check_required_tools(which: Callable[[str], str | None] = shutil.which) -> list[CheckResult]:
    missing = [tool for tool in REQUIRED_TOOLS if which(tool) is None]
    return [CheckResult(LEVEL_ERROR, f"Missing tool: {tool}") for tool in missing]


def check_docker_access() -> tuple[CheckResult, list[str] | None]:
    """Returns the check result and the docker command prefix that works."""
    if _run_ok(["docker", "info"]):
        return CheckResult(LEVEL_OK, "Docker accessible without sudo"), ["docker"]
    if _run_ok(["sudo", "-n", "docker", "info"]):
        return CheckResult(LEVEL_WARN, "Docker requires sudo privileges; usable with sudo"), ["sudo", "docker"]
    return (
        CheckResult(
            LEVEL_ERROR,
            "Cannot access Docker even with sudo",
            hint="sudo usermod -aG docker $USER && newgrp docker",
        ),
        None,
    )


def check_host_vulkan(which: Callable[[str], str | None] = shutil.which) -> CheckResult:
    if which("vulkaninfo") is None:
        return CheckResult(
            LEVEL_WARN,
            "vulkan-tools not installed",
            hint="sudo apt install -y vulkan-tools libvulkan1",
        )
    if _run_ok(["vulkaninfo"]):
        return CheckResult(LEVEL_OK, "Host Vulkan works (vulkaninfo succeeded)")
    return CheckResult(LEVEL_ERROR, "Host Vulkan driver seems broken (vulkaninfo failed). Fix host before Docker.")


def nvidia_toolkit_installed(which: Callable[[str], str | None] = shutil.which) -> bool:
    return which("nvidia-ctk") is not None or which("nvidia-container-toolkit") is not None


def check_nvidia_stack(docker: list[str], which: Callable[[str], str | None] = shutil.which) -> list[CheckResult]:
    results: list[CheckResult] = []
    if which("nvidia-smi") is not None and _run_ok(["nvidia-smi"]):
        results.append(CheckResult(LEVEL_OK, "nvidia-smi OK"))
    else:
        results.append(CheckResult(LEVEL_ERROR, "nvidia-smi failed: driver missing/not loaded"))

    if nvidia_toolkit_installed(which):
        results.append(CheckResult(LEVEL_OK, "NVIDIA container toolkit installed"))
    else:
        results.append(
            CheckResult(
                LEVEL_ERROR,
                "nvidia-container-toolkit not found",
                hint="sudo apt install -y nvidia-container-toolkit && sudo systemctl restart docker",
            )
        )

    info = _run([*docker, "info"])
    if re.search(r"Runtimes:.*nvidia", info.stdout or ""):
        results.append(CheckResult(LEVEL_OK, "Docker runtime lists NVIDIA"))
    else:
        results.append(
            CheckResult(
                LEVEL_WARN,
                "Docker runtime may not list NVIDIA",
                hint="sudo nvidia-ctk runtime configure --runtime=docker && sudo systemctl restart docker",
            )
        )
    return results


def check_display_sockets(x11_dir: Path, wayland_socket: Path) -> list[CheckResult]:
    results: list[CheckResult] = []
    if x11_dir.is_dir():
        results.append(CheckResult(LEVEL_OK, f"X11 socket dir present: {x11_dir}"))
    else:
        results.append(CheckResult(LEVEL_WARN, "X11 socket dir missing (ok if using Wayland only)"))
    if wayland_socket.is_socket():
        results.append(CheckResult(LEVEL_OK, f"Wayland socket present: {wayland_socket}"))
    else:
        results.append(CheckResult(LEVEL_WARN, f"Wayland socket not found: {wayland_socket}"))
    return results


def as_real_user_command(real_user: str, shell_command: str, *, display: str, runtime_dir: str) -> list[str]:
    """Builds a command running ``shell_command`` in the desktop user's session.

    xhost must never run as root, so when invoked through sudo the command is
    dropped back to the real user.
    """
    env_args = [f"DISPLAY={display}", f"XDG_RUNTIME_DIR={runtime_dir}"]
    if real_user and real_user != getpass.getuser():
        return ["sudo", "-u", real_user, *env_args, "bash", "-lc", shell_command]
    return ["env", *env_args, "bash", "-lc", shell_command]


def check_x_access(real_user: str, *, display: str, runtime_dir: str, fix: bool) -> list[CheckResult]:
    def as_user(shell_command: str) -> bool:
        return _run_ok(as_real_user_command(real_user, shell_command, display=display, runtime_dir=runtime_dir))

    if not as_user("command -v xhost >/dev/null"):
        return [CheckResult(LEVEL_WARN, f"xhost not found in {real_user}'s session PATH")]
    if as_user("xhost | grep -q 'LOCAL:'"):
        return [CheckResult(LEVEL_OK, "X access already granted to local users")]

    results = [CheckResult(LEVEL_WARN, "X access for Docker not granted", hint="xhost +local:docker")]
    if fix:
        if as_user("xhost +local:docker >/dev/null 2>&1"):
            results.append(CheckResult(LEVEL_OK, f"Granted X access (as {real_user}): xhost +local:docker"))
        else:
            results.append(
                CheckResult(LEVEL_WARN, f"Failed to grant X access (is a desktop session active for {real_user}?)")
            )
    return results


def check_dri(gpu: str, dri_path: Path = DRI_PATH) -> CheckResult:
    if gpu == GPU_NVIDIA:
        return CheckResult(LEVEL_OK, "At runtime, container should expose /dev/nvidia* via gpus: all")
    if dri_path.exists():
        return CheckResult(LEVEL_OK, f"{dri_path} present")
    return CheckResult(LEVEL_WARN, f"{dri_path} missing: Mesa/DRM inactive?")


def _resolve_real_user(env: Mapping[str, str]) -> tuple[str, int | None]:
    real_user = str(env.get("SUDO_USER") or env.get("USER") or "").strip() or getpass.getuser()
    try:
        return real_user, pwd.getpwnam(real_user).pw_uid
    except KeyError:
        return real_user, None


def run_host_checks(
    *,
    fix: bool = False,
    env: Mapping[str, str] | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> HostReport:
    """Runs every host readiness check.

    Missing tools or an unreachable Docker daemon end the run early since the
    remaining checks depend on them.
    """
    source = os.environ if env is None else env
    report = HostReport()
    report.real_user, report.real_uid = _resolve_real_user(source)

    for result in check_required_tools(which):
        report.add(result)
    if report.has_errors:
        report.add(CheckResult(LEVEL_ERROR, "Install missing tools and re-run."))
        return report

    docker_result, docker = check_docker_access()
    report.add(docker_result)
    if docker is None:
        return report

    report.gpu = detect_gpu_vendor(_run(["lspci"]).stdout or "")
    report.add(CheckResult(LEVEL_OK, f"Detected GPU: {report.gpu}"))
    report.add(check_host_vulkan(which))

    if report.gpu == GPU_NVIDIA:
        for result in check_nvidia_stack(docker, which):
            report.add(result)
        report.toolkit_installed = nvidia_toolkit_installed(which)

    runtime_dir = f"/run/user/{report.real_uid}" if report.real_uid is not None else str(source.get("XDG_RUNTIME_DIR") or "")
    wayland_display = str(source.get("WAYLAND_DISPLAY") or "").strip() or DEFAULT_WAYLAND_DISPLAY
    report.wayland_socket = Path(runtime_dir) / wayland_display
    for result in check_display_sockets(report.x11_socket_dir, report.wayland_socket):
        report.add(result)

    for result in check_x_access(
        report.real_user,
        display=str(source.get("DISPLAY") or "").strip() or ":0",
        runtime_dir=str(source.get("XDG_RUNTIME_DIR") or "").strip() or runtime_dir,
        fix=fix,
    ):
        report.add(result)

    report.add(check_dri(report.gpu))
    return report
