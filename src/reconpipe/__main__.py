"""Entry point for `python -m reconpipe` / `reconpipe`.

Subcommands:
    reconpipe serve          Run the HTTP service (default)
    reconpipe scan DOMAIN    Run one scan in the foreground and print the report
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def _serve() -> None:
    from reconpipe.app import ReconApp

    app = ReconApp()
    asyncio.run(app.run())


def _scan(domain: str) -> int:
    from reconpipe.app import ReconApp
    from reconpipe.errors import InvalidTargetError

    app = ReconApp()
    try:
        run = asyncio.run(app.scan(domain))
    except InvalidTargetError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    print(run.summary or f"Scan {run.status}")
    return 0 if run.status == "completed" else 1


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="reconpipe",
        description="Containerized recon and vulnerability scanning pipeline",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the HTTP service")
    scan = sub.add_parser("scan", help="Scan one domain in the foreground")
    scan.add_argument("domain")

    args = parser.parse_args()

    match args.command:
        case "scan":
            sys.exit(_scan(args.domain))
        case _:
            _serve()


if __name__ == "__main__":
    main()
