import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from tandem.chat.transport import ChatClient
from tandem.config import ConfigError, TandemConfig
from tandem.context.codebase import KeywordCodebaseContext
from tandem.plugins.catalog import PluginCatalog
from tandem.recipes.my_prompt import MyPromptStore
from tandem.recipes.registry import default_registry
from tandem.services.auth import AuthError, AuthProvider
from tandem.services.guardrails import HttpGuardrails
from tandem.services.storage import LocalStorage
from tandem.session.history import HistoryStore
from tandem.session.orchestrator import (
    RecipeInProgressError,
    SessionNotFoundError,
    SessionOrchestrator,
)
from tandem.transcript.messages import ChatMessage

logger = logging.getLogger(__name__)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_format == "json":
        handlers[0].setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=handlers)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


class TerminalPrinter:
    """Prints the streaming assistant reply as it grows."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self._count = 0
        self._printed = ""
        self._finished = False

    def on_transcript(self, messages: list[ChatMessage], in_progress: bool) -> None:
        if not messages or messages[-1].speaker != "assistant":
            return
        if len(messages) != self._count:
            self._count = len(messages)
            self._printed = ""
            self._finished = False
        elif self._finished:
            return
        text = messages[-1].display_text or ""
        if text.startswith(self._printed):
            self.out.write(text[len(self._printed):])
        else:
            self.out.write("\n" + text)
        self._printed = text
        if not in_progress and text:
            self.out.write("\n")
            self._finished = True
        self.out.flush()

    def on_error(self, message: str) -> None:
        print(f"Error: {message}", file=self.out)

    def on_suggestions(self, suggestions: list[str]) -> None:
        if suggestions:
            print("Suggestions: " + " | ".join(suggestions), file=self.out)


def load_config(args: argparse.Namespace) -> TandemConfig:
    config = TandemConfig.from_env(
        model=getattr(args, "model", None),
        codebase=getattr(args, "codebase", None),
        use_context=getattr(args, "context", None),
        history_path=Path(args.history) if getattr(args, "history", None) else None,
    )
    config.validate()
    return config


def build_session(config: TandemConfig, root: Path) -> SessionOrchestrator:
    storage = LocalStorage(config.history_path)
    my_prompts = MyPromptStore(config.custom_prompts_path)
    codebase_context = None
    if config.use_context != "none":
        codebase_context = KeywordCodebaseContext(root, config.codebase or None)
    guardrails = None
    if config.experimental_guardrails:
        guardrails = HttpGuardrails(config.server_endpoint, config.access_token)
    return SessionOrchestrator(
        chat=ChatClient(
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.answer_tokens,
            extra_headers=config.custom_headers,
        ),
        config=config,
        recipes=default_registry(my_prompts),
        history=HistoryStore(storage),
        auth=AuthProvider(),
        codebase_context=codebase_context,
        plugins=PluginCatalog(storage),
        guardrails=guardrails,
        my_prompts=my_prompts,
    )


def print_chats(history: HistoryStore) -> None:
    chats = history.list_chats()
    if not chats:
        print("No saved chats.")
        return
    for chat_id, transcript in chats:
        first = transcript.interactions[0].human_message if transcript.interactions else None
        title = (first.display_text or first.text or "") if first else ""
        title = title.splitlines()[0][:60] if title else "(empty)"
        print(f"{chat_id}  {len(transcript.interactions):3d} turns  {title}")


async def _run_turn(session: SessionOrchestrator, line: str) -> None:
    try:
        await session.execute_commands(line)
        await session.wait_for_completion()
    except asyncio.CancelledError:
        # Ctrl-C while a reply streams aborts the turn and keeps the REPL alive.
        task = asyncio.current_task()
        if task is not None:
            task.uncancel()
        await session.abort_completion()
        print("\n[aborted]")


async def _handle_builtin(session: SessionOrchestrator, line: str) -> bool:
    command, _, rest = line.partition(" ")
    rest = rest.strip()
    if command == "/history":
        print_chats(session.history)
    elif command == "/restore":
        try:
            await session.restore_session(rest)
        except SessionNotFoundError as e:
            print(f"Error: {e}")
        else:
            print(f"Restored {rest}")
    elif command == "/delete":
        await session.delete_history(rest)
        print(f"Deleted {rest}")
    elif command == "/plugins":
        if session.plugins is None:
            print("Plugins are not available.")
        elif rest:
            try:
                enabled = await session.set_enabled_plugins(rest.split(","))
            except ValueError as e:
                print(f"Error: {e}")
            else:
                print(f"Enabled plugins: {', '.join(enabled) or '(none)'}")
        else:
            print(f"Available: {', '.join(session.plugins.list_names()) or '(none)'}")
            print(f"Enabled: {', '.join(session.plugins.enabled_names()) or '(none)'}")
    elif command == "/prompts":
        if not session.config.experimental_custom_recipes:
            print("Custom prompts are off. Set TANDEM_EXPERIMENTAL_CUSTOM_RECIPES=1 to use them.")
        elif rest == "add":
            await session.execute_custom_recipe("add")
            print(f"Custom prompts file: {session.config.custom_prompts_path}")
        else:
            await session.execute_custom_recipe("get")
            names = session.my_prompts.list_names() if session.my_prompts is not None else []
            print(f"Custom prompts: {', '.join(names) or '(none)'}. Run one with /open <name>.")
    else:
        return False
    return True


async def chat_loop(session: SessionOrchestrator, config: TandemConfig) -> int:
    printer = TerminalPrinter()
    session.hooks.on_transcript.append(printer.on_transcript)
    session.hooks.on_error.append(printer.on_error)
    session.hooks.on_suggestions.append(printer.on_suggestions)

    if config.access_token:
        try:
            status = await session.auth.auth(
                config.server_endpoint, config.access_token, config.custom_headers
            )
            logger.info(f"Signed in to {status.endpoint}: {status.authenticated}")
        except AuthError as e:
            logger.warning(f"Authentication failed: {e}")

    await session.init()
    print(f"Chat {session.current_chat_id} (model {config.model}). /quit to exit, /reset for a new chat.")

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            if line in ("/quit", "/exit"):
                break
            if line.startswith("/") and await _handle_builtin(session, line):
                continue
            try:
                await _run_turn(session, line)
            except RecipeInProgressError:
                continue
    finally:
        session.dispose()
    return 0


def cmd_chat(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}")
        return 1

    session = build_session(config, Path(args.root))
    try:
        return asyncio.run(chat_loop(session, config))
    except KeyboardInterrupt:
        return 0


def cmd_history(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    history = HistoryStore(LocalStorage(config.history_path))
    if args.clear:
        asyncio.run(history.clear())
        print("Chat history cleared.")
        return 0
    if args.delete:
        if history.get(args.delete) is None:
            print(f"Error: No chat history for session {args.delete}")
            return 1
        asyncio.run(history.delete(args.delete))
        print(f"Deleted {args.delete}")
        return 0
    print_chats(history)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="tandem",
        description="Tandem - AI coding assistant chat",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Minimal logging (warnings/errors only)"
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log format (default: text)",
    )
    parser.add_argument("--history", help="Path of the chat history file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    chat_parser = subparsers.add_parser("chat", help="Start an interactive chat")
    chat_parser.add_argument("--model", "-m", help="Model name or alias")
    chat_parser.add_argument("--root", default=".", help="Codebase root directory (default: .)")
    chat_parser.add_argument("--codebase", help="Codebase name used in prompts")
    chat_parser.add_argument(
        "--context",
        choices=["keyword", "embeddings", "none"],
        help="Codebase context mode",
    )
    chat_parser.set_defaults(func=cmd_chat)

    history_parser = subparsers.add_parser("history", help="List or delete saved chats")
    history_parser.add_argument("--delete", metavar="CHAT_ID", help="Delete one chat")
    history_parser.add_argument("--clear", action="store_true", help="Delete all chats and inputs")
    history_parser.set_defaults(func=cmd_history)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
