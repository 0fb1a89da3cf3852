"""CLI: deepdive-chat serve, sessions, summarize, delete, chat, config validate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import httpx

from ..config import load_config, validate_config
from ..core.context_chain import ContextChainBuilder
from ..core.gateway import CompletionGateway
from ..core.manager import ConversationManager, iter_tree
from ..core.summarizer import Summarizer
from ..storage.filesystem import FilesystemStore
from ..types import DeepDiveError, NotFoundError

CHAT_HELP = """\
Commands:
  /new                 start a new conversation
  /parent              go to the parent conversation
  /switch ID           switch to a conversation by id
  /tree                show the conversation tree
  /show                show the active conversation
  /highlight N TEXT    highlight TEXT in message N (see /show) for a deep dive
  /fragments           list staged fragments
  /dive                spawn child conversations from staged fragments
  /delete ID           delete a conversation and its subtree
  /quit                exit"""


def _setup_logging(config) -> None:
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _get_store(config_path: str | None = None):
    config = load_config(config_path)
    _setup_logging(config)
    return FilesystemStore(root=config.storage.root), config


def _print_tree(conversations, active_id: str | None = None) -> None:
    for depth, conversation in iter_tree(conversations):
        marker = "*" if conversation.id == active_id else " "
        summarized = "" if conversation.has_unsummarized_delta or not conversation.summary else " [summarized]"
        print(
            f"{marker} {'  ' * depth}{conversation.title}  "
            f"({len(conversation.messages)} msgs){summarized}  {conversation.id}"
        )


def cmd_sessions(args):
    """Show the stored conversation tree."""
    store, config = _get_store(args.config)
    conversations = store.list_all()
    if not conversations:
        print(f"No sessions stored in {config.storage.root}.")
        return
    _print_tree(conversations)


def cmd_summarize(args):
    """Summarize one stored conversation."""
    store, config = _get_store(args.config)

    async def run():
        async with httpx.AsyncClient(timeout=config.upstream.timeout) as client:
            gateway = CompletionGateway(config, client)
            summarizer = Summarizer(store, gateway, config.summarization)
            return await summarizer.summarize(args.session_id)

    try:
        result = asyncio.run(run())
    except DeepDiveError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if result.skipped:
        print(f"Skipped ({result.message_count} messages, already current).")
    else:
        print(f"Summarized {result.message_count} messages.")
    if result.summary:
        print()
        print(result.summary)


def cmd_delete(args):
    """Delete a stored conversation and its subtree."""
    store, _ = _get_store(args.config)
    try:
        store.delete(args.session_id)
    except NotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Deleted {args.session_id}.")


def _show(manager: ConversationManager) -> None:
    conversation = manager.active
    print(f"== {conversation.title} ({conversation.id})")
    if conversation.origin_term:
        print(f"   dived into: {conversation.origin_term}")
    for index, message in enumerate(conversation.messages):
        print(f"[{index}] {message.role}: {message.content}")
        for highlight in message.highlights:
            print(f"      ^ {highlight.text!r} ({highlight.id})")


async def _chat_loop(args) -> None:
    config = load_config(args.config)
    _setup_logging(config)
    store = FilesystemStore(root=config.storage.root)

    async with httpx.AsyncClient(timeout=config.upstream.timeout) as client:
        gateway = CompletionGateway(config, client, chain_builder=ContextChainBuilder(store))
        summarizer = Summarizer(store, gateway, config.summarization)
        manager = ConversationManager.load(
            store, gateway, summarizer, config, active_id=args.session,
        )
        print(CHAT_HELP)
        _show(manager)

        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue

            try:
                if line in ("/quit", "/exit"):
                    break
                elif line == "/new":
                    await manager.new_conversation()
                    print("New conversation.")
                elif line == "/parent":
                    if await manager.open_parent() is None:
                        print("This conversation has no parent.")
                    else:
                        _show(manager)
                elif line.startswith("/switch "):
                    await manager.switch(line.split(maxsplit=1)[1])
                    _show(manager)
                elif line == "/tree":
                    _print_tree(manager.conversations, manager.active.id)
                elif line == "/show":
                    _show(manager)
                elif line.startswith("/highlight "):
                    parts = line.split(maxsplit=2)
                    if len(parts) < 3 or not parts[1].isdigit():
                        print("Usage: /highlight N TEXT")
                        continue
                    message = manager.active.messages[int(parts[1])]
                    start = message.content.find(parts[2])
                    if start < 0:
                        print("Text not found in that message.")
                        continue
                    highlight = manager.add_highlight(
                        message.id, start, start + len(parts[2]), parts[2],
                    )
                    print("Highlighted." if highlight else "Cannot highlight that.")
                elif line == "/fragments":
                    for fragment in manager.active.pending_fragments:
                        print(f"- {fragment.text}")
                elif line == "/dive":
                    children = await manager.deep_dive()
                    if not children:
                        print("No staged fragments.")
                    else:
                        print(f"Spawned {len(children)} conversation(s).")
                        _show(manager)
                elif line.startswith("/delete "):
                    manager.delete(line.split(maxsplit=1)[1])
                    print("Deleted.")
                elif line.startswith("/"):
                    print(CHAT_HELP)
                else:
                    printed = 0

                    def on_delta(text: str) -> None:
                        nonlocal printed
                        print(text[printed:], end="", flush=True)
                        printed = len(text)

                    reply = await manager.send(
                        line, stream=not args.no_stream, on_delta=on_delta,
                    )
                    if printed < len(reply.content):
                        print(reply.content[printed:], end="")
                    print()
            except (DeepDiveError, IndexError) as e:
                print(f"Error: {e}")

        await manager.wait_for_background()


def cmd_chat(args):
    """Interactive terminal chat over the conversation tree."""
    try:
        asyncio.run(_chat_loop(args))
    except KeyboardInterrupt:
        print()


def cmd_serve(args):
    """Start the HTTP API."""
    import uvicorn

    from ..server import create_app

    config = load_config(args.config)
    _setup_logging(config)

    # Uvicorn force-cancels streaming responses after the graceful-shutdown
    # timeout; the resulting CancelledError tracebacks are noise.
    class _SuppressCancelled(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info:
                exc_type = record.exc_info[0]
                if exc_type is asyncio.CancelledError:
                    return False
            return True

    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config)
    print(f"deepdive-chat listening on http://{host}:{port} (sessions in {config.storage.root})")
    uvicorn.run(
        app, host=host, port=port, log_level=config.logging.level.lower(),
        timeout_graceful_shutdown=2,
    )


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
        print(f"  Upstream: {config.upstream.base_url} ({config.upstream.model})")
        print(f"  API key env: {config.upstream.api_key_env}")
        print(f"  Storage: {config.storage.root}")
        print(f"  Server: {config.server.host}:{config.server.port}")


def main():
    parser = argparse.ArgumentParser(
        prog="deepdive-chat",
        description="Branching LLM chat with deep-dive child conversations",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", "-p", type=int, default=None)

    # sessions
    subparsers.add_parser("sessions", help="Show the stored conversation tree")

    # summarize
    summarize_parser = subparsers.add_parser("summarize", help="Summarize a conversation")
    summarize_parser.add_argument("session_id", help="Conversation id")

    # delete
    delete_parser = subparsers.add_parser("delete", help="Delete a conversation and its subtree")
    delete_parser.add_argument("session_id", help="Conversation id")

    # chat
    chat_parser = subparsers.add_parser("chat", help="Interactive terminal chat")
    chat_parser.add_argument("--session", "-s", default=None, help="Conversation id to open")
    chat_parser.add_argument("--no-stream", action="store_true", help="Wait for whole replies")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "sessions":
        cmd_sessions(args)
    elif args.command == "summarize":
        cmd_summarize(args)
    elif args.command == "delete":
        cmd_delete(args)
    elif args.command == "chat":
        cmd_chat(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: deepdive-chat config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
