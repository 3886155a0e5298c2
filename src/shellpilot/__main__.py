"""Module entrypoint for `python -m shellpilot`."""

from shellpilot.cli import run

if __name__ == "__main__":
    raise SystemExit(run())
