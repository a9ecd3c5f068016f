"""CLI: session-engine init, config validate, chat, list, export, import, purge, wipe, serve."""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import timedelta
from pathlib import Path

from ..config import load_config, validate_config
from ..errors import ConfigError, SessionEngineError
from ..storage import build_store
from ..types import CancelledEvent, CompleteEvent, DeltaEvent, ErrorEvent, RetryEvent

CONFIG_TEMPLATE = """\
version: "1.0"

backend:
  provider: gemini            # gemini | openai
  model: gemini-1.5-flash
  temperature: 0.7
  max_output_tokens: 2048
  timeout_seconds: 30
  system_prompt: ""

providers:
  gemini:
    api_key_env: GEMINI_API_KEY
  openai:
    api_key_env: OPENAI_API_KEY
    base_url: https://api.openai.com/v1

context_budget: 30000
token_counter: estimate       # estimate | tiktoken | callable:module:func

optimizer:
  recent_turns_kept: 6
  soft_threshold: 0.7
  summarize: true
  max_summary_tokens: 200

retry:
  max_attempts: 3
  base_delay: 0.5
  max_delay: 8.0

cache:
  enabled: true
  ttl_seconds: 1800
  max_entries: 1000
  sweep_interval_seconds: 300

conversation:
  exchange_ceiling: 10
  max_message_length: 4000
  queue_concurrent_turns: true
  retention_days: 7

uploads:
  max_file_size: 10485760
  max_files_per_turn: 5

storage:
  backend: sqlite             # sqlite | filesystem
  root: .session-engine/store
  sqlite_path: .session-engine/conversations.db

features:
  persistence: true
  metrics: true
  markdown_hints: true

rate_limit:
  enabled: true
  max_requests: 10            # turns per client per window
  window_seconds: 60
"""


def _get_store(config_path: str | None = None):
    config = load_config(config_path)
    return build_store(config), config


def _build_engine(config_path: str | None):
    from ..engine import SessionEngine

    try:
        return SessionEngine(load_config(config_path))
    except ConfigError as e:
        print("Config validation errors:", file=sys.stderr)
        for err in e.errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)


def cmd_init(args):
    """Write a starter config file."""
    output = Path.cwd() / "session-engine.yaml"
    if output.exists() and not args.force:
        print(f"Config file already exists: {output}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    output.write_text(CONFIG_TEMPLATE)
    print(f"Created {output}")
    print()
    print("Next steps:")
    print("  1. Export your key:   export GEMINI_API_KEY=...")
    print("  2. Validate config:   session-engine config validate")
    print("  3. Start chatting:    session-engine chat")


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Backend: {config.backend.provider} ({config.backend.model})")
        print(f"  Context budget: {config.context_budget:,}")
        print(f"  Exchange ceiling: {config.conversation.exchange_ceiling}")
        print(f"  Storage: {config.storage.backend}")


def cmd_list(args):
    """List recent conversations."""
    store, _config = _get_store(args.config)
    try:
        listings = store.list_recent(args.limit)
    finally:
        store.close()

    if not listings:
        print("No stored conversations.")
        return
    print(f"{'Conversation':<34} {'Turns':>6} {'Last activity':>20}")
    print("-" * 62)
    for item in listings:
        print(
            f"{item.conversation_id:<34} {item.turn_count:>6} "
            f"{item.last_activity.strftime('%Y-%m-%d %H:%M'):>20}"
        )


def cmd_purge(args):
    """Delete conversations idle for more than N days."""
    store, config = _get_store(args.config)
    days = args.days if args.days is not None else config.conversation.retention_days
    try:
        removed = store.purge_older_than(timedelta(days=days))
    finally:
        store.close()
    print(f"Removed {removed} conversation(s) older than {days} day(s).")


def cmd_wipe(args):
    """Delete every stored conversation."""
    if not args.yes:
        answer = input("Delete ALL stored conversations? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("Aborted.")
            return
    store, _config = _get_store(args.config)
    try:
        removed = store.clear()
    finally:
        store.close()
    print(f"Deleted {removed} conversation(s).")


def cmd_export(args):
    """Export a stored conversation as JSON."""
    engine = _build_engine(args.config)

    async def _run() -> str:
        try:
            return await engine.export_conversation(args.conversation_id)
        finally:
            await engine.close()

    try:
        data = asyncio.run(_run())
    except SessionEngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        Path(args.output).write_text(data)
        print(f"Wrote {args.output}")
    else:
        print(data)


def cmd_import(args):
    """Import a conversation from an export file."""
    path = Path(args.file)
    if not path.is_file():
        print(f"File not found: {path}", file=sys.stderr)
        sys.exit(1)
    engine = _build_engine(args.config)

    async def _run() -> str:
        try:
            return await engine.import_conversation(path.read_text())
        finally:
            await engine.close()

    try:
        conversation_id = asyncio.run(_run())
    except SessionEngineError as e:
        print(f"Import failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Imported as {conversation_id}")


async def _chat_loop(engine, resume: str | None) -> None:
    async with engine:
        if resume:
            conversation_id = await engine.load_conversation(resume)
        else:
            conversation_id = await engine.start_new_conversation()
        print(f"Conversation {conversation_id}. Commands: /new /usage /history /quit")

        while True:
            try:
                text = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                print()
                return

            command = text.strip()
            if command == "/quit":
                return
            if command == "/new":
                conversation_id = await engine.start_new_conversation()
                print(f"Started {conversation_id}")
                continue
            if command == "/usage":
                usage = engine.get_usage(conversation_id)
                print(f"{usage.exchange_count} exchange(s), {usage.remaining} remaining")
                continue
            if command == "/history":
                for turn in engine.conversation(conversation_id).turns:
                    flags = " (fallback)" if turn.metadata.get("fallback") else ""
                    print(f"[{turn.role}]{flags} {turn.content}")
                continue

            try:
                stream = engine.submit_turn(conversation_id, text)
            except SessionEngineError as e:
                print(e.user_message)
                continue

            print("assistant> ", end="", flush=True)
            async for event in stream:
                if isinstance(event, DeltaEvent):
                    print(event.text, end="", flush=True)
                elif isinstance(event, RetryEvent):
                    print(f"\n[retrying in {event.delay:.1f}s]\nassistant> ", end="", flush=True)
                elif isinstance(event, CompleteEvent):
                    print()
                elif isinstance(event, ErrorEvent):
                    print(f"\n{event.user_message}")
                elif isinstance(event, CancelledEvent):
                    print("\n[cancelled]")


def cmd_chat(args):
    """Interactive streaming chat."""
    engine = _build_engine(args.config)
    try:
        asyncio.run(_chat_loop(engine, args.resume))
    except SessionEngineError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args):
    """Start the HTTP server."""
    import uvicorn

    from ..server import create_app

    engine = _build_engine(args.config)
    uvicorn.run(create_app(engine), host=args.host, port=args.port, log_level="info")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="session-engine",
        description="Conversational session engine",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    subparsers = parser.add_subparsers(dest="command")

    # init
    init_parser = subparsers.add_parser("init", help="Write a starter config file")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing config")

    # chat
    chat_parser = subparsers.add_parser("chat", help="Interactive streaming chat")
    chat_parser.add_argument("--resume", help="Conversation id to continue")

    # list
    list_parser = subparsers.add_parser("list", help="List stored conversations")
    list_parser.add_argument("--limit", "-n", type=int, default=20, help="Max conversations")

    # export / import
    export_parser = subparsers.add_parser("export", help="Export a conversation as JSON")
    export_parser.add_argument("conversation_id", help="Conversation id")
    export_parser.add_argument("--output", "-o", help="Output file (default: stdout)")
    import_parser = subparsers.add_parser("import", help="Import a conversation export")
    import_parser.add_argument("file", help="Export file")

    # purge / wipe
    purge_parser = subparsers.add_parser("purge", help="Delete conversations past retention")
    purge_parser.add_argument("--days", type=int, default=None, help="Override retention_days")
    wipe_parser = subparsers.add_parser("wipe", help="Delete all stored conversations")
    wipe_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--port", "-p", type=int, default=8600)
    serve_parser.add_argument("--host", default="127.0.0.1")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "chat":
        cmd_chat(args)
    elif args.command == "list":
        cmd_list(args)
    elif args.command == "export":
        cmd_export(args)
    elif args.command == "import":
        cmd_import(args)
    elif args.command == "purge":
        cmd_purge(args)
    elif args.command == "wipe":
        cmd_wipe(args)
    elif args.command == "serve":
        cmd_serve(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: session-engine config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
