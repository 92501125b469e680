import argparse
import json
import logging
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from common.cancel import CancellationToken
from common.events import Event, ErrorEvent, StepStartEvent, TextChunkEvent, ToolCallUpdateEvent

from bellows.agents import AgentRegistry
from bellows.config import BellowsConfig, ConfigError
from bellows.errors import BellowsError
from bellows.llm.provider import ProviderManager
from bellows.permission import PermissionRequest
from bellows.session.manager import SessionManager
from bellows.session.message import AssistantMessage, TextPart
from bellows.session.prompt import SessionPrompt
from bellows.session.store import SQLiteMessageStore
from bellows.tools.builtin import register_builtin_tools
from bellows.tools.registry import ToolRegistry


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
        level = logging.WARNING if log_format == "text" else logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_format == "json":
        handlers[0].setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=handlers)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
        )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


def _store(config: BellowsConfig) -> SQLiteMessageStore:
    return SQLiteMessageStore(config.db_path)


def _approve(request: PermissionRequest) -> bool:
    target = ", ".join(request.patterns) or request.permission
    print(f"\n🔐 Allow {request.permission}: {target}")
    try:
        response = input("Allow? (y/n): ")
    except EOFError:
        return False
    return response.strip().lower() in ("y", "yes")


class ConsolePrinter:
    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def __call__(self, event: Event) -> None:
        if isinstance(event, TextChunkEvent):
            print(event.text, end="", flush=True)
        elif isinstance(event, ToolCallUpdateEvent):
            if event.status == "running" and not event.title:
                args = json.dumps(event.args)
                if len(args) > 120:
                    args = args[:117] + "..."
                print(f"\n🔧 {event.tool_name} {args}", flush=True)
            elif event.status == "completed":
                print(f"✅ {event.tool_name} {event.title}", flush=True)
            elif event.status == "error":
                print(f"❌ {event.tool_name}: {event.error}", flush=True)
        elif isinstance(event, StepStartEvent) and self.verbose:
            print(f"\n── step {event.step} ──", flush=True)
        elif isinstance(event, ErrorEvent):
            print(f"\n❌ {event.source}: {event.message}", file=sys.stderr, flush=True)


def cmd_run(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    config = BellowsConfig()
    if args.max_steps:
        config.max_steps = args.max_steps
    root_path = Path(args.root).resolve()
    store = _store(config)
    sessions = SessionManager(store)

    if args.session:
        try:
            session = sessions.get_session(args.session)
        except BellowsError as e:
            print(f"Error: {e}")
            return 1
    else:
        session = sessions.create_session(
            model=args.model or config.default_model(),
            agent=args.agent or config.default_agent,
        )
        print(f"📁 Session {session.id}")

    tools = register_builtin_tools(ToolRegistry(), root_path)
    agents = AgentRegistry(root_path)
    agents.reload()
    runner = SessionPrompt(
        store,
        tools,
        ProviderManager(),
        agents=agents,
        config=config,
        root_path=root_path,
        ask=None if args.no_approve else _approve,
    )
    runner.emitter.subscribe(ConsolePrinter(args.verbose))

    message = " ".join(args.message) if args.message else sys.stdin.read()
    if not message.strip():
        print("Error: empty message")
        return 1

    cancel = CancellationToken()
    outcome: dict = {}

    def work() -> None:
        try:
            outcome["result"] = runner.prompt(
                session.id, [message], model=args.model, agent=args.agent, cancel=cancel
            )
        except BaseException as e:
            outcome["error"] = e

    worker = threading.Thread(target=work, name=f"prompt-{session.id}", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        print("\n⏹  Cancelling...", file=sys.stderr)
        cancel.cancel("Cancelled by user")
        worker.join()

    if "error" in outcome:
        error = outcome["error"]
        if isinstance(error, (BellowsError, ConfigError)):
            print(f"\nError: {error}")
            return 1
        raise error

    final = outcome["result"]
    print()
    info = final.info
    if isinstance(info, AssistantMessage):
        if info.error is not None:
            print(f"⚠️  {info.error.name}: {info.error.message}")
            return 1
        logger.info(f"Cost ${info.cost:.4f}, tokens {info.tokens.input}/{info.tokens.output}")
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    sessions = SessionManager(_store(BellowsConfig())).list_sessions()
    if not sessions:
        print("No sessions found.")
        return 0
    for session in sessions:
        model = str(session.model) if session.model else "-"
        print(f"{session.id}  {session.updated_at[:19]}  {model:<40}  {session.title or ''}")
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    store = _store(BellowsConfig())
    try:
        SessionManager(store).get_session(args.session_id)
    except BellowsError as e:
        print(f"Error: {e}")
        return 1
    messages = list(store.stream_messages(args.session_id))
    for item in reversed(messages):
        print(f"── {item.info.role} {item.info.id}")
        for part in item.parts:
            if isinstance(part, TextPart) and not part.synthetic:
                print(part.text)
            elif part.type == "tool":
                print(f"  🔧 {part.tool} [{part.state.status}]")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    manager = SessionManager(_store(BellowsConfig()))
    try:
        if args.output:
            path = manager.export_to_file(args.session_id, args.output)
            print(f"Exported {args.session_id} to {path}")
        else:
            print(json.dumps(manager.export_session(args.session_id), indent=2, ensure_ascii=False))
    except BellowsError as e:
        print(f"Error: {e}")
        return 1
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    manager = SessionManager(_store(BellowsConfig()))
    try:
        session = manager.import_from_file(args.path)
    except (BellowsError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    print(f"Imported as {session.id}")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    manager = SessionManager(_store(BellowsConfig()))
    try:
        manager.delete_session(args.session_id)
    except BellowsError as e:
        print(f"Error: {e}")
        return 1
    print(f"Deleted {args.session_id}")
    return 0


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="bellows",
        description="Bellows - coding agent for your terminal",
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

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Send a message to the agent")
    run_parser.add_argument("message", nargs="*", help="Message text (default: read stdin)")
    run_parser.add_argument("--session", "-s", metavar="SESSION_ID", help="Continue a session")
    run_parser.add_argument("--model", "-m", help="Model as provider/model or alias")
    run_parser.add_argument("--agent", "-a", help="Agent name (build, plan, or custom)")
    run_parser.add_argument("--root", default=".", help="Project root (default: cwd)")
    run_parser.add_argument("--max-steps", type=int, help="Step limit when the agent sets none")
    run_parser.add_argument(
        "--no-approve",
        action="store_true",
        help="Deny actions that need approval instead of prompting",
    )
    run_parser.set_defaults(func=cmd_run)

    sessions_parser = subparsers.add_parser("sessions", help="List sessions")
    sessions_parser.set_defaults(func=cmd_sessions)

    show_parser = subparsers.add_parser("show", help="Print a session transcript")
    show_parser.add_argument("session_id")
    show_parser.set_defaults(func=cmd_show)

    export_parser = subparsers.add_parser("export", help="Export a session as JSON")
    export_parser.add_argument("session_id")
    export_parser.add_argument("--output", "-o", help="Write to file instead of stdout")
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import a session export")
    import_parser.add_argument("path")
    import_parser.set_defaults(func=cmd_import)

    delete_parser = subparsers.add_parser("delete", help="Delete a session")
    delete_parser.add_argument("session_id")
    delete_parser.set_defaults(func=cmd_delete)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
