import argparse
import asyncio
import os
import sys
from dataclasses import replace
from pathlib import Path

import uvicorn

from ..config import Settings
from ..logging_config import setup_logging, uvicorn_log_level
from ..persistence import PersistenceStore
from ..store import DataStore


def _settings_from_args(args) -> Settings:
    settings = Settings.from_env()
    overrides = {}
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = int(args.port)
    if getattr(args, "launch_cwd", None):
        overrides["launch_cwd"] = str(Path(os.path.expanduser(args.launch_cwd)).resolve())
    if getattr(args, "data_dir", None):
        overrides["data_dir"] = args.data_dir
    if getattr(args, "agents_file", None):
        overrides["agents_file"] = args.agents_file
    if getattr(args, "verbose", False):
        overrides["verbose"] = True
    if getattr(args, "event_streams", False):
        overrides["event_streams"] = True
    return replace(settings, **overrides)


def main():
    parser = argparse.ArgumentParser(description="agent_shells: supervise coding agents on PTYs")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # agent-shells serve
    serve_parser = subparsers.add_parser("serve", help="Run the control plane and streaming server")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: AGENT_SHELLS_HOST or 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: AGENT_SHELLS_PORT, PORT or 6968)")
    serve_parser.add_argument("--launch-cwd", default=None, help="Default working directory for new sessions")
    serve_parser.add_argument("--data-dir", default=None, help="State directory (default: <launch cwd>/.agent_shells)")
    serve_parser.add_argument("--agents-file", default=None, help="YAML file with extra agent definitions")
    serve_parser.add_argument(
        "--event-streams",
        action="store_true",
        help="Run a stream-json companion for claude sessions (default: AGENT_SHELLS_EVENT_STREAMS)",
    )
    serve_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    # agent-shells list
    list_parser = subparsers.add_parser("list", help="List saved sessions")
    list_parser.add_argument("--launch-cwd", default=None, help="Launch directory whose state to read")
    list_parser.add_argument("--data-dir", default=None, help="State directory")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = _settings_from_args(args)

    if args.command == "serve":
        serve(settings)
        return

    try:
        asyncio.run(run_async(args, settings))
    except KeyboardInterrupt:
        pass


def serve(settings: Settings) -> None:
    from ..api import create_app
    from ..runtime import AgentShellsRuntime

    setup_logging(settings.verbose)
    app = create_app(AgentShellsRuntime(settings))
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=uvicorn_log_level(settings.verbose),
    )


async def run_async(args, settings: Settings):
    data_dir = Path(settings.data_dir).expanduser() if settings.data_dir else None
    store = PersistenceStore(DataStore(data_dir, launch_cwd=settings.launch_cwd))

    if args.command == "list":
        records = await store.load_records()
        if not records:
            print(f"No saved sessions in {store.store.root}")
            return
        print(f"{'SESSION':<36} {'AGENT':<12} {'BRANCH':<20} CWD")
        for rec in records:
            name = rec.custom_name or rec.agent_name
            print(f"{rec.session_id:<36} {name[:12]:<12} {(rec.branch or '-')[:20]:<20} {rec.cwd}")


if __name__ == "__main__":
    main()
