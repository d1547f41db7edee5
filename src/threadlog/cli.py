"""Command-line entry point for the conversation state store."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import socket
import sys
from pathlib import Path

import yaml

from threadlog.config.loader import load_config
from threadlog.domain.errors import (
    KeyResolutionError,
    ReconstructionMismatch,
    SyncExhausted,
    ThreadlogError,
)
from threadlog.domain.keys import EventContext, resolve_key, validate_key
from threadlog.orchestration.runtime import ConversationRuntime

logger = logging.getLogger("threadlog")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_MISMATCH = 2
EXIT_DENIED = 3
EXIT_SYNC_EXHAUSTED = 4


def _add_key_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--key", "-k", help="Conversation key (otherwise resolved from --surface/--thread-id)")
    p.add_argument("--surface", help="Event surface, e.g. issue or pull_request")
    p.add_argument("--thread-id", help="External thread identifier")
    p.add_argument("--repository", help="Optional owner/name namespace for the thread")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="threadlog", description="Git-backed conversation transcript store")
    p.add_argument("--config", "-c", help="Path to store YAML config (defaults apply if omitted)")
    p.add_argument("--root", "-r", default=".", help="State repository root")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Print the conversation key for an event")
    _add_key_args(resolve)

    run = sub.add_parser("run", help="Run one execution cycle around an external command")
    _add_key_args(run)
    run.add_argument("--owner", "-o", help="Lock owner id (default: host-pid)")
    run.add_argument("--extra", action="append", default=[], help="Extra path to commit with the state")
    run.add_argument("cmd", nargs=argparse.REMAINDER, help="Command; '{transcript}' is replaced by the path")

    sub.add_parser("reap", help="Remove stale admission locks")

    consolidate = sub.add_parser("consolidate", help="Fold delta into base now")
    _add_key_args(consolidate)
    consolidate.add_argument("--owner", "-o", help="Lock owner id (default: host-pid)")

    status = sub.add_parser("status", help="Show segment, lock and sync state for a key")
    _add_key_args(status)

    return p.parse_args(argv)


def _key_from_args(args: argparse.Namespace) -> str:
    if args.key:
        return validate_key(args.key)
    return resolve_key(
        EventContext(
            surface=args.surface or "",
            thread_id=args.thread_id or "",
            repository=args.repository,
        )
    )


def _default_owner() -> str:
    return os.environ.get("THREADLOG_OWNER") or f"{socket.gethostname()}-{os.getpid()}"


def _command_runner(cmd: list[str]):
    """Runner that execs cmd with {transcript} substituted and THREADLOG_TRANSCRIPT set."""
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]
    if not cmd:
        raise ValueError("run needs a command after the options")

    async def run(transcript_path: Path) -> None:
        argv = [part.replace("{transcript}", str(transcript_path)) for part in cmd]
        env = {**os.environ, "THREADLOG_TRANSCRIPT": str(transcript_path)}
        proc = await asyncio.create_subprocess_exec(*argv, env=env)
        code = await proc.wait()
        if code != 0:
            raise RuntimeError(f"Command exited with {code}: {argv[0]}")

    return run


async def _dispatch(args: argparse.Namespace, runtime: ConversationRuntime) -> int:
    if args.command == "reap":
        print(runtime.reap())
        return EXIT_OK

    key = _key_from_args(args)
    if args.command == "status":
        print(runtime.status(key).model_dump_json(indent=2))
        return EXIT_OK

    owner = args.owner or _default_owner()
    if args.command == "consolidate":
        result = await runtime.consolidate_now(key, owner)
    else:
        result = await runtime.execute(
            key,
            owner,
            _command_runner(args.cmd),
            extra_paths=[Path(p) for p in args.extra],
            handle_signals=True,
        )
    if result.status == "denied":
        print(f"{key}: busy, skipped")
        return EXIT_DENIED
    print(f"{key}: persisted {result.sha}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except (ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    if args.command == "resolve":
        try:
            print(_key_from_args(args))
        except KeyResolutionError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        return EXIT_OK

    runtime = ConversationRuntime(config, Path(args.root))
    try:
        return asyncio.run(_dispatch(args, runtime))
    except ReconstructionMismatch as e:
        logger.error("%s", e)
        return EXIT_MISMATCH
    except SyncExhausted as e:
        logger.error("%s", e)
        return EXIT_SYNC_EXHAUSTED
    except (ThreadlogError, ValueError, RuntimeError) as e:
        logger.error("%s", e)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
