"""
Command-line interface for apstra-client.

Usage (examples):
  - Server API version:
      python -m apstra_client.cli version --url https://apstra.local --user admin --password secret

  - Blueprint ids, one per line:
      apstra-client blueprints

  - Block until an asynchronous task finishes:
      apstra-client wait-task --blueprint 5c8f... --task 7d2a...

Connection settings fall back to apstra.yml / APSTRA_* environment variables
(see apstra_client.core.config).
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Iterable

from .core.apstra_client import ApstraClient
from .core.config import AppConfig, ConfigError, load_config
from .core.errors import ApstraError
from .core.logging_setup import build_logger
from .core.tasks import TASK_STATUS_SUCCESS

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TASK_NOT_SUCCEEDED = 2


def _build_arg_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)

    # Apstra / HTTP
    common.add_argument("--url", default=None, help="Apstra base URL")
    common.add_argument("--user", default=None, help="Apstra username")
    common.add_argument("--password", default=None, help="Apstra password")
    common.add_argument("--verify-tls", default=None, choices=["true", "false"], help="Verify TLS (https)")
    common.add_argument("--timeout-sec", type=float, default=None, help="HTTP timeout seconds")

    # Logging
    common.add_argument("--logs-dir", default=None, help="Logs base directory")
    common.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    common.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")

    p = argparse.ArgumentParser(prog="apstra-client", description="Apstra API client CLI")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("version", parents=[common], help="Print the Apstra API version")
    sub.add_parser("blueprints", parents=[common], help="List blueprint ids")

    w = sub.add_parser("wait-task", parents=[common], help="Wait for an asynchronous task to finish")
    w.add_argument("--blueprint", required=True, help="Blueprint id owning the task")
    w.add_argument("--task", required=True, help="Task id")

    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI flags into a load_config() override dict, skipping unset flags."""
    server = {
        "url": args.url,
        "user": args.user,
        "password": args.password,
        "verify_tls": None if args.verify_tls is None else args.verify_tls == "true",
        "timeout_sec": args.timeout_sec,
    }
    logging_ = {
        "base_dir": args.logs_dir,
        "console_level": args.console_level,
        "file_level": args.file_level,
    }
    return {
        "server": {k: v for k, v in server.items() if v is not None},
        "logging": {k: v for k, v in logging_.items() if v is not None},
    }


def _version_cmd(client: ApstraClient, args: argparse.Namespace) -> int:
    print(client.get_api_version())
    return EXIT_OK


def _blueprints_cmd(client: ApstraClient, args: argparse.Namespace) -> int:
    for bp_id in client.list_blueprint_ids():
        print(bp_id)
    return EXIT_OK


def _wait_task_cmd(client: ApstraClient, args: argparse.Namespace) -> int:
    record = client.wait_for_task_completion(args.blueprint, args.task)
    print(f"{record.id or args.task} {record.status}")
    return EXIT_OK if record.status == TASK_STATUS_SUCCESS else EXIT_TASK_NOT_SUCCEEDED


_COMMANDS = {
    "version": _version_cmd,
    "blueprints": _blueprints_cmd,
    "wait-task": _wait_task_cmd,
}


def _run(cfg: AppConfig, args: argparse.Namespace) -> int:
    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
    )
    logger.info("Starting apstra-client %s against %s", args.cmd, cfg.server.url)

    with ApstraClient.from_config(cfg, error_sink=lambda err: logger.error("task polling: %s", err)) as client:
        try:
            return _COMMANDS[args.cmd](client, args)
        except ApstraError as exc:
            logger.error("%s failed: %s", args.cmd, exc)
            print(f"error: {exc}", file=sys.stderr)
            return EXIT_ERROR


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        cfg = load_config(_cli_overrides(args))
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    return _run(cfg, args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
