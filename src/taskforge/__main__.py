"""Module entrypoint for ``python -m taskforge``."""

from __future__ import annotations

from taskforge.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
