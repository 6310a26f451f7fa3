"""CLI: workflow-relay serve, history, config validate."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from ..config import configure_logging, load_config, validate_config
from ..storage.sqlite import SQLiteStore
from ..types import ConfigError


class _SuppressCancelled(logging.Filter):
    """Drop CancelledError tracebacks uvicorn logs when it force-closes streams on shutdown."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info:
            exc_type = record.exc_info[0]
            if exc_type is asyncio.CancelledError:
                return False
        return True


def _load(args):
    try:
        return load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args):
    """Start the relay HTTP server."""
    import uvicorn

    from ..proxy import create_app

    config = _load(args)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    configure_logging(config)

    for err in validate_config(config):
        print(f"Warning: {err}", file=sys.stderr)

    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    app = create_app(config)
    print(
        f"workflow-relay on {config.server.host}:{config.server.port} "
        f"-> {config.upstream.base_url} (engine={config.engine})"
    )
    uvicorn.run(
        app, host=config.server.host, port=config.server.port,
        log_level=config.logging.level.lower(),
        timeout_graceful_shutdown=2,
    )


def cmd_history(args):
    """Print locally stored messages for one conversation."""
    config = _load(args)
    store = SQLiteStore(config.storage.sqlite_path)
    try:
        handle = store.get_conversation(args.conversation_id)
        if handle is None:
            print(f"No conversation '{args.conversation_id}'.")
            return
        messages = store.get_messages(args.conversation_id, limit=args.limit)
    finally:
        store.close()

    if args.json:
        print(json.dumps([
            {
                "role": m.role,
                "content": m.content,
                "message_id": m.upstream_message_id,
                "usage": m.usage.to_dict() if m.usage else None,
                "created_at": m.created_at.isoformat(),
            }
            for m in messages
        ], indent=2))
        return

    print(f"Conversation: {handle.local_id}")
    print(f"Upstream id:  {handle.upstream_id or '(none)'}")
    print(f"Messages:     {len(messages)}")
    print()
    for m in messages:
        stamp = m.created_at.strftime("%Y-%m-%d %H:%M:%S")
        tokens = f" [{m.usage.total_tokens} tokens]" if m.usage else ""
        print(f"{stamp} {m.role:<9}{tokens} {m.content}")


def cmd_config_validate(args):
    """Validate config file."""
    config = _load(args)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Engine: {config.engine}")
        print(f"  Upstream: {config.upstream.base_url}")
        print(
            f"  Timeouts: buffered={config.upstream.buffered_timeout}s "
            f"streaming={config.upstream.streaming_timeout}s"
        )
        print(f"  Storage: {config.storage.backend} ({config.storage.sqlite_path})")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="workflow-relay",
        description="Conversation-state proxy and stream relay for workflow engines",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the relay server")
    serve_parser.add_argument("--host", help="Bind host (default: server.host)")
    serve_parser.add_argument("--port", "-p", type=int, help="Bind port (default: server.port)")

    # history
    history_parser = subparsers.add_parser("history", help="Show stored messages of a conversation")
    history_parser.add_argument("conversation_id", help="Local conversation id")
    history_parser.add_argument("--limit", "-n", type=int, default=50, help="Max messages")
    history_parser.add_argument("--json", action="store_true", help="Print as JSON")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "history":
        cmd_history(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            config_parser.print_help()
            sys.exit(1)


if __name__ == "__main__":
    main()
