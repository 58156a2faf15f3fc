from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from . import __version__
from .errors import CompileFailure
from .service import PowerMonitorService
from .settings import Settings

logger = logging.getLogger("shutdownd")

NAME = "shutdownd"

EXIT_INVALIDARGUMENT = 2
EXIT_CONFIG = 3
EXIT_NOTCONFIGURED = 6

DESCRIPTION = (
    "shutdownd subscribes to a bus topic and initiates a system shutdown when a "
    "message is received indicating that utility power is down."
)

EPILOG = """\
-down-expr and -recovered-expr are boolean policy expressions. They accept
CEL-style operators (! && || == != < <= > >= in) and the Python spellings
(not and or). Within those expressions, the following variables are available:
  - powerType: integer, representing the type of power event received (e.g. 1 = utility power)
  - online: boolean, representing whether the power type is online
  - scope: string, representing the scope of the power event (e.g. 'global')

Every option can also be set through the environment with a SHUTDOWND_ prefix
(e.g. SHUTDOWND_TOPIC, SHUTDOWND_RECOVERY_PERIOD_SEC).
"""

SYSTEMD_USAGE = """\
To use the shutdownd systemd service, you must customize the service file via:

  sudo systemctl edit shutdownd.service

Customize the [Service] ExecStart line to include the desired arguments.
For example, to set the bus server and topic (the minimal required arguments), add the following to your edit:

  [Service]
  ExecStart=
  ExecStart=/usr/bin/shutdownd -server mybusserver.lan:6379 -topic power/alarms

(Both ExecStart= lines are required.)

After saving and closing the editor, reload systemd and restart the service:

  sudo systemctl daemon-reload
  sudo systemctl restart shutdownd
"""


# ─────────────────────────────────────────────
# Logging setup
# ─────────────────────────────────────────────

def setup_logging(debug: bool = False) -> None:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        "[SHUTDOWND] %(asctime)s %(levelname)s - %(name)s - %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.handlers.clear()
    root.addHandler(handler)


# ─────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=NAME,
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    # Flags without a value default to None so the environment can supply them.
    p.add_argument("-topic", "--topic", dest="TOPIC", help="Bus topic to subscribe to. Required.")
    p.add_argument(
        "-server",
        "--server",
        dest="server",
        help="Bus server and port to connect to, e.g. 'mybusserver.lan:6379', or a redis:// URL. Required.",
    )
    p.add_argument(
        "-recovery-period",
        "--recovery-period",
        dest="RECOVERY_PERIOD_SEC",
        help="Duration to wait after utility power is lost before initiating shutdown (e.g. 180, 90s, 3m).",
    )
    p.add_argument(
        "-down-expr",
        "--down-expr",
        dest="ARM_EXPR",
        help="Expression determining whether an event should trigger a shutdown.",
    )
    p.add_argument(
        "-recovered-expr",
        "--recovered-expr",
        dest="DISARM_EXPR",
        help="Expression determining whether an event should cancel a pending shutdown.",
    )
    p.add_argument("-shutdown-cmd", "--shutdown-cmd", dest="SHUTDOWN_CMD", help="Command run to shut the host down.")
    p.add_argument("-debug", "--debug", dest="DEBUG", action="store_true", default=None, help="Enable debug-level logging.")
    p.add_argument(
        "-strict",
        "--strict",
        dest="STRICT",
        action="store_true",
        default=None,
        help="Exit on invalid messages or unexpected topics. A failed evaluation always exits.",
    )
    p.add_argument(
        "-validate-scope",
        "--validate-scope",
        dest="VALIDATE_SCOPE",
        action="store_true",
        default=None,
        help="Reject messages whose scope is not global, local, 1p or 1c.",
    )
    p.add_argument(
        "-dry-run",
        "--dry-run",
        dest="DRY_RUN",
        action="store_true",
        default=None,
        help="Log instead of running the shutdown command.",
    )
    p.add_argument("-version", "--version", dest="print_version", action="store_true", help="Print version, then exit.")
    p.add_argument(
        "-help-systemd-usage",
        "--help-systemd-usage",
        dest="help_systemd_usage",
        action="store_true",
        help="Print instructions on configuring the systemd unit, then exit.",
    )
    return p


def _server_url(server: str) -> str:
    if "://" in server:
        return server
    return f"redis://{server}"


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out = {
        k: v
        for k, v in vars(args).items()
        if k.isupper() and v is not None
    }
    if args.server:
        out["BUS_URL"] = _server_url(args.server)
    return out


def _usage_error(parser: argparse.ArgumentParser, message: str) -> None:
    print(message, file=sys.stderr)
    print("", file=sys.stderr)
    parser.print_help(sys.stderr)
    sys.exit(EXIT_INVALIDARGUMENT)


def load_settings(argv: Optional[List[str]] = None) -> Settings:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.print_version:
        print(f"{NAME} {__version__}")
        sys.exit(0)

    if args.help_systemd_usage:
        print(SYSTEMD_USAGE, file=sys.stderr, end="")
        sys.exit(EXIT_NOTCONFIGURED)

    try:
        settings = Settings(**_overrides(args))
    except ValidationError as e:
        _usage_error(parser, f"invalid configuration: {e}")

    if not settings.TOPIC:
        _usage_error(parser, "-topic is required.")
    if not settings.BUS_URL:
        _usage_error(parser, "-server is required.")
    return settings


def main(argv: Optional[List[str]] = None) -> None:
    settings = load_settings(argv)
    setup_logging(settings.DEBUG)

    try:
        service = PowerMonitorService(settings)
    except CompileFailure as e:
        logger.critical("%s", e)
        sys.exit(EXIT_CONFIG)

    try:
        code = asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("shutdownd interrupted; exiting.")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
