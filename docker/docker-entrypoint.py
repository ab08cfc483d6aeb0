#!/usr/bin/env python3

from __future__ import annotations

from vulkan_entrypoint.cli import main


def _entrypoint_main() -> None:
    # Installed as the image ENTRYPOINT; CMD arrives as the command to exec.
    main(prog_name="docker-entrypoint")


if __name__ == "__main__":
    _entrypoint_main()
