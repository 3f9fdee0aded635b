"""Babbler CLI -- brain setup, learning, replying, stemmer and server management."""

import argparse
import asyncio
import logging
import os
import sys
import time
from pathlib import Path


def _babbler_home() -> Path:
    """Resolve BABBLER_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("BABBLER_HOME", str(Path.home() / ".babbler")))


def _default_loop_ms() -> int:
    return int(os.environ.get("BABBLER_LOOP_MS", "500"))


def _brain_path(args) -> Path:
    if args.brain:
        return Path(args.brain)
    return _babbler_home() / "brain.db"


def _open_brain(args):
    """Open an existing brain, or exit with a hint to run init."""
    from babbler.brain import Brain
    from babbler.sqlite_graph import BabblerError

    path = _brain_path(args)
    if not path.exists():
        print(f"No brain at {path}. Run: babbler init", file=sys.stderr)
        sys.exit(1)
    try:
        return Brain(path)
    except BabblerError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_init(args):
    """Initialize a new brain."""
    from babbler.brain import Brain

    path = _brain_path(args)
    if path.exists():
        print(f"Brain already exists: {path}", file=sys.stderr)
        sys.exit(1)

    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    tokenizer = "MegaHAL" if args.megahal else "Cobe"
    Brain.init(path, order=args.order, tokenizer=tokenizer)
    print(f"Initialized brain: {path} (order {args.order}, {tokenizer} tokenizer)")


def cmd_learn(args):
    """Learn every line of the given files in one batch."""
    brain = _open_brain(args)
    start = time.monotonic()
    count = 0

    brain.start_batch_learning()
    try:
        for filename in args.files:
            with open(filename, encoding="utf-8") as fd:
                for line in fd:
                    brain.learn(line.strip())
                    count += 1
    finally:
        brain.stop_batch_learning()
        brain.close()

    elapsed = time.monotonic() - start
    print(f"Learned {count} line(s) ({elapsed:.2f}s)")


def cmd_reply(args):
    """Print one reply to the given text."""
    text = " ".join(args.text)
    brain = _open_brain(args)
    try:
        print(brain.reply(text, loop_ms=args.loop_ms, max_len=args.max_len))
    finally:
        brain.close()


def cmd_console(args):
    """Interactive console: learn each line, then reply to it."""
    brain = _open_brain(args)
    try:
        while True:
            try:
                line = input("> ")
            except EOFError:
                print()
                break
            if not line.strip():
                continue
            brain.learn(line)
            print(brain.reply(line, loop_ms=args.loop_ms))
    finally:
        brain.close()


def cmd_set_stemmer(args):
    """Stem every token with a Snowball stemmer for the given language."""
    brain = _open_brain(args)
    try:
        brain.set_stemmer(args.language)
    except KeyError:
        print(f"Unknown stemmer language: {args.language}", file=sys.stderr)
        sys.exit(1)
    finally:
        brain.close()
    print(f"Stemmer set: {args.language}")


def cmd_del_stemmer(args):
    """Remove the stemmer and all token stems."""
    brain = _open_brain(args)
    try:
        brain.del_stemmer()
    finally:
        brain.close()
    print("Stemmer removed")


def cmd_status(args):
    """Show brain settings and graph size."""
    brain = _open_brain(args)
    graph = brain.graph
    try:
        kv = [
            ("Brain", str(_brain_path(args))),
            ("Order", str(brain.order)),
            ("Tokenizer", graph.get_info_text("tokenizer", "Cobe")),
            ("Stemmer", graph.get_info_text("stemmer", "none")),
            ("Tokens", str(graph.token_count())),
            ("Nodes", str(graph.node_count())),
            ("Edges", str(graph.edge_count())),
        ]
    finally:
        brain.close()

    width = max(len(k) for k, _ in kv)
    for key, value in kv:
        print(f"  {key.ljust(width)}  {value}")


def cmd_serve(args):
    """Run the HTTP service."""
    from babbler.server.http_server import get_or_create_api_key, run_http

    path = _brain_path(args)
    # fail here, before an api key is written, if the brain is missing or unreadable
    _open_brain(args).close()

    api_key = None if args.no_auth else get_or_create_api_key()
    if api_key:
        print(f"API key: {api_key}", file=sys.stderr)
    asyncio.run(run_http(path, args.host, args.port, api_key))


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="babbler",
        description="Babbler -- a Markov-chain chatter brain",
    )
    parser.add_argument("-b", "--brain", help="Brain file (default: $BABBLER_HOME/brain.db)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- Brain commands ---
    init_parser = subparsers.add_parser("init", help="Initialize a new brain")
    init_parser.add_argument("--order", type=int, default=3, help="Context order (default: 3)")
    init_parser.add_argument("--megahal", action="store_true", help="Use the MegaHAL tokenizer")

    learn_parser = subparsers.add_parser("learn", help="Learn each line of one or more text files")
    learn_parser.add_argument("files", nargs="+", help="Text files to learn")

    reply_parser = subparsers.add_parser("reply", help="Reply to text")
    reply_parser.add_argument("text", nargs="+", help="Input text")
    reply_parser.add_argument(
        "--loop-ms", type=int, default=_default_loop_ms(), help="Time budget in milliseconds (default: 500)"
    )
    reply_parser.add_argument("--max-len", type=int, default=None, help="Reject replies longer than this")

    console_parser = subparsers.add_parser("console", help="Interactive learn and reply console")
    console_parser.add_argument(
        "--loop-ms", type=int, default=_default_loop_ms(), help="Time budget in milliseconds (default: 500)"
    )

    # --- Admin commands ---
    set_stemmer_parser = subparsers.add_parser("set-stemmer", help="Enable a Snowball stemmer (e.g. english)")
    set_stemmer_parser.add_argument("language", help="Stemmer language")
    subparsers.add_parser("del-stemmer", help="Disable the stemmer and delete token stems")
    subparsers.add_parser("status", help="Show brain settings and graph size")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8470, help="Bind port (default: 8470)")
    serve_parser.add_argument("--no-auth", action="store_true", help="Disable API key authentication")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr)

    commands = {
        "init": cmd_init,
        "learn": cmd_learn,
        "reply": cmd_reply,
        "console": cmd_console,
        "set-stemmer": cmd_set_stemmer,
        "del-stemmer": cmd_del_stemmer,
        "status": cmd_status,
        "serve": cmd_serve,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
