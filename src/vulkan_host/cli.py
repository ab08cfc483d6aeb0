from __future__ import annotations

import click

from vulkan_host.checks import GPU_NVIDIA, LEVEL_ERROR, LEVEL_OK, LEVEL_WARN, CheckResult, HostReport, run_host_checks


LEVEL_PREFIXES = {
    LEVEL_OK: "[ok]   ",
    LEVEL_WARN: "[warn] ",
    LEVEL_ERROR: "[fail] ",
}


def _echo_result(result: CheckResult) -> None:
    click.echo(f"{LEVEL_PREFIXES.get(result.level, '')}{result.message}", err=result.failed)
    if result.hint:
        click.echo(f"       -> {result.hint}", err=result.failed)


def _echo_summary(report: HostReport) -> None:
    wayland = report.wayland_socket
    wayland_state = "(ok)" if wayland is not None and wayland.is_socket() else "(missing)"
    x11_state = "(ok)" if report.x11_socket_dir.is_dir() else "(missing)"
    uid = report.real_uid if report.real_uid is not None else "?"
    click.echo("")
    click.echo("Summary:")
    click.echo(f"  GPU            : {report.gpu}")
    click.echo(f"  Real user      : {report.real_user} (uid {uid})")
    click.echo(f"  Wayland socket : {wayland or '-'} {wayland_state}")
    click.echo(f"  X11 socket dir : {report.x11_socket_dir} {x11_state}")
    if report.gpu == GPU_NVIDIA:
        click.echo(f"  Toolkit        : {'ok' if report.toolkit_installed else 'missing'}")


@click.command(help="Verify the host is ready for Vulkan GUI containers (Wayland/X11).")
@click.option("--fix", is_flag=True, default=False, help="Also apply safe fixes (xhost +local:docker).")
def main(fix: bool) -> None:
    report = run_host_checks(fix=fix)
    for result in report.results:
        _echo_result(result)
    _echo_summary(report)

    if report.has_errors:
        raise click.ClickException("Host is not ready; fix the failed checks above and re-run.")
    click.echo("")
    click.echo(f"Host looks ready{' (with fixes applied)' if fix else ''}.")
    click.echo("Next: start the container and enable GUI if you want VkSurface on host.")


if __name__ == "__main__":
    main()
