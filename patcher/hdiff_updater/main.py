# hdiff_updater/main.py
from __future__ import annotations
import sys

# robust imports (work with/without package context)
try:
    from . import cli
except ImportError:  # frozen exe starting main.py as a script
    import hdiff_updater.cli as cli


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        return cli.run_cli(argv)
    except KeyboardInterrupt:
        print("\naborted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
