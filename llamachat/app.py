# llamachat/app.py
from __future__ import annotations
import argparse, logging, platform, sys, threading
from pathlib import Path
from typing import Optional

from .constants import APP_NAME, __version__
from .core.chat_controller import ChatController
from .core.chat_store import ChatStore
from .infra.llm.errors import IncompleteStreamError, StreamError
from .infra.llm.ollama_client import OllamaClient
from .infra.llm import ollama_registry as registry
from .logging_config import init_logging
from .paths import chats_path, default_data_dir, log_paths, settings_dir
from .settings import load_settings

log = logging.getLogger("boot")

# Seconds to wait for a cancelled turn to wind down before giving the prompt back
CANCEL_GRACE = 2.0


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog=APP_NAME, description="Chat with a local Ollama server")
    p.add_argument("--data-dir", type=str, default=None, help="Override data directory")
    p.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--no-console-log", action="store_true", help="Disable console logging")
    sub = p.add_subparsers(dest="command", required=True)

    models = sub.add_parser("models", help="List, pull or delete models")
    msub = models.add_subparsers(dest="action", required=True)
    msub.add_parser("list")
    msub.add_parser("refresh")
    for name in ("pull", "delete"):
        mp = msub.add_parser(name)
        mp.add_argument("name")

    chat = sub.add_parser("chat", help="Send a prompt (or start an interactive chat)")
    chat.add_argument("prompt", nargs="*")
    chat.add_argument("--model", default=None)
    chat.add_argument("--chat-id", default=None, help="Continue an existing chat")
    chat.add_argument("--system", default=None, help="System prompt for a new chat")

    chats = sub.add_parser("chats", help="Manage saved chats")
    csub = chats.add_subparsers(dest="action", required=True)
    csub.add_parser("list")
    cd = csub.add_parser("delete")
    cd.add_argument("chat_id")
    return p.parse_args(argv)


def _fmt_size(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def run_models(args, cfg) -> int:
    base_url = cfg["ollama"]["base_url"]
    if args.action == "list":
        for m in registry.list_models(base_url):
            print(f"{m.name:<32} {_fmt_size(m.size):>10}  {m.parameter_size or '-':<8} {m.quantization_level or '-'}")
    elif args.action == "refresh":
        reg = registry.refresh_registry(base_url, settings_dir().joinpath("models.json"))
        print(f"Models available: {sum(1 for m in reg['models'] if m['available'])}")
    elif args.action == "pull":
        def _progress(p: registry.PullProgress):
            frac = p.fraction
            pct = f" {frac * 100:5.1f}%" if frac is not None else ""
            print(f"\r{p.status}{pct}", end="", flush=True)
        status = registry.pull_model(args.name, base_url, on_progress=_progress)
        print(f"\n{status or 'done'}")
    elif args.action == "delete":
        registry.delete_model(args.name, base_url)
        print(f"Deleted {args.name}")
    return 0


def run_chats(args, store: ChatStore) -> int:
    if args.action == "list":
        for c in sorted(store.load_chats(), key=lambda c: c.updated_at, reverse=True):
            print(f"{c.id}  {c.model:<20} {len(c.messages):>4} msgs  {c.title}")
    elif args.action == "delete":
        store.delete_chat(args.chat_id)
        print(f"Deleted {args.chat_id}")
    return 0


def _print_token(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _run_turn(controller: ChatController, chat_id: str, text: str, grace: float = CANCEL_GRACE) -> bool:
    """
    Stream one reply on a worker thread; Ctrl+C cancels it. A worker still
    blocked in a read after ``grace`` seconds is left behind: its job is
    already cancelled, so nothing it receives later is printed or saved.
    """
    outcome: dict = {}

    def work():
        try:
            outcome["chat"] = controller.send(chat_id, text, on_chunk=_print_token)
        except Exception as e:
            outcome["error"] = e

    t = threading.Thread(target=work, name=f"stream-{chat_id}", daemon=True)
    try:
        t.start()
        while t.is_alive():
            t.join(0.1)
    except KeyboardInterrupt:
        controller.stop(chat_id)
        t.join(grace)
        if t.is_alive():
            log.info("Chat %s: worker still blocked after cancel, not waiting", chat_id)
        print("\n[cancelled]")
        return False
    print()

    err = outcome.get("error")
    if isinstance(err, IncompleteStreamError):
        print("[interrupted: the server closed the stream early]", file=sys.stderr)
        return False
    if isinstance(err, StreamError):
        print(f"[error: {err}]", file=sys.stderr)
        return False
    if err is not None:
        raise err
    return outcome.get("chat") is not None


def run_chat(args, cfg, store: ChatStore) -> int:
    chat_cfg = cfg["chat"]
    client = OllamaClient.from_settings(cfg)
    controller = ChatController(client, store, options=chat_cfg.get("options") or {})

    if args.chat_id:
        chat = store.get_chat(args.chat_id)
    else:
        chat = store.create_new_chat(
            args.model or chat_cfg["default_model"],
            system_prompt=args.system if args.system is not None else chat_cfg.get("system_prompt", ""),
        )
    log.info("Chat %s using model %s", chat.id, chat.model)

    if args.prompt:
        return 0 if _run_turn(controller, chat.id, " ".join(args.prompt)) else 1

    print(f"{chat.title} [{chat.model}] (empty line or /quit to exit)")
    while True:
        try:
            line = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not line or line == "/quit":
            break
        _run_turn(controller, chat.id, line)
    return 0


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)

    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else default_data_dir()
    logs_dir, log_path = log_paths(data_dir)
    settings_path = settings_dir().joinpath("app.json")
    cfg = load_settings(settings_path)

    level = (args.log_level or cfg["logging"]["level"]).upper()
    init_logging(
        logs_dir,
        level=level,
        max_bytes=int(cfg["logging"]["max_bytes"]),
        backup_count=int(cfg["logging"]["backup_count"]),
        also_console=(not args.no_console_log),
    )
    log.info("=== %s %s starting ===", APP_NAME, __version__)
    log.info("Platform: %s | Python: %s", platform.platform(), platform.python_version())
    log.info("Data dir: %s | Log file: %s", data_dir, log_path)

    store = ChatStore(chats_path(data_dir))
    try:
        if args.command == "models":
            return run_models(args, cfg)
        if args.command == "chats":
            return run_chats(args, store)
        return run_chat(args, cfg, store)
    except StreamError as e:
        log.error("%s failed: %s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyError as e:
        print(f"error: {e.args[0]}", file=sys.stderr)
        return 2
    except ValueError as e:
        log.error("%s failed: %s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
