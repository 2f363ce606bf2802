#!/usr/bin/env python3
"""
chatrelay CLI.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the relay server
    ping            status, health  Ping a running instance
    models          tags            List models an Ollama endpoint serves
    sync            sync-models     Copy an endpoint's models into the store
    chat            ask             Stream one message through a running relay
    generate        gen             Stream straight from Ollama, no relay
    add-endpoint    endpoint        Register an Ollama endpoint
    add-user        user            Create or update a user profile
"""

import argparse
import asyncio
import sys

from chatrelay import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the relay server."""
    import uvicorn
    from chatrelay.config import get_config

    cfg = get_config()
    host = args.host or cfg.get("server", {}).get("host", "0.0.0.0")
    port = args.port or cfg.get("server", {}).get("port", 3001)

    print(f"  chatrelay {__version__}")
    print(f"  Listening on {host}:{port}")
    print(f"  Ollama:  {cfg.get('ollama', {}).get('default_url', 'http://localhost:11434')}")
    print(f"  Storage: {cfg.get('storage', {}).get('backend', 'sqlite')}")
    print()

    uvicorn.run(
        "chatrelay.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_ping(args):
    """Ping a running chatrelay instance."""
    import httpx

    url = (args.url or "http://localhost:3001").rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
        return 1
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")
        return 1

    if resp.status_code != 200:
        print(f"  ✗  No answer, got HTTP {resp.status_code}")
        return 1
    data = resp.json()
    print(f"  ✓  {url} is UP (version {data.get('version', '?')})")
    return 0


def _ollama_url(args) -> str:
    from chatrelay.config import get_config

    return (args.ollama or get_config().get("ollama", {}).get("default_url", "http://localhost:11434")).rstrip("/")


def cmd_models(args):
    """List models an Ollama endpoint serves."""
    import httpx

    url = _ollama_url(args)
    try:
        resp = httpx.get(f"{url}/api/tags", timeout=10)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"  ✗  Cannot reach Ollama at {url}: {e}")
        return 1

    models = resp.json().get("models") or []
    print(f"  Ollama: {url}")
    if not models:
        print("  (no models pulled)")
        return 0
    for i, m in enumerate(models):
        prefix = "└─" if i == len(models) - 1 else "├─"
        size_gb = (m.get("size") or 0) / 1e9
        print(f"  {prefix} {m.get('name', '?'):<32} {size_gb:>6.1f} GB")
    return 0


def cmd_sync(args):
    """Copy an endpoint's model list into the store."""
    from chatrelay.backends.ollama import OllamaBackend
    from chatrelay.config import get_config
    from chatrelay.errors import RelayError
    from chatrelay.storage import make_store

    cfg = get_config()
    store = make_store(cfg)
    backend = OllamaBackend.from_config(cfg)

    async def _sync():
        try:
            ep = await store.get_endpoint(args.endpoint_id)
            if ep is None:
                print(f"  ✗  No endpoint with id {args.endpoint_id}")
                return 1
            tags = await backend.list_models(ep.base_url)
            synced = await store.upsert_models(ep.id, tags)
        finally:
            await store.close()
        print(f"  ✓  Synced {len(synced)} models from {ep.name} ({ep.base_url})")
        for m in synced:
            print(f"     {m.id}  {m.model_id}")
        return 0

    try:
        return asyncio.run(_sync())
    except RelayError as e:
        print(f"  ✗  Sync failed: {e.message}")
        return 1


def cmd_chat(args):
    """Send one message through a running relay and print the reply as it streams."""
    import httpx
    from chatrelay.sse import parse_frame

    url = (args.url or "http://localhost:3001").rstrip("/")
    body = {
        "conversation_id": args.conversation,
        "model_id": args.model,
        "message": " ".join(args.message),
        "stream": True,
    }
    headers = {"Authorization": f"Bearer {args.token}"}

    try:
        with httpx.stream("POST", f"{url}/api/chat", json=body, headers=headers, timeout=None) as resp:
            if resp.status_code != 200:
                resp.read()
                print(f"  ✗  HTTP {resp.status_code}: {resp.text}")
                return 1
            for line in resp.iter_lines():
                event = parse_frame(line)
                if event is None:
                    continue
                if event.kind == "content":
                    print(event.content, end="", flush=True)
                elif event.kind == "error":
                    print(f"\n  ✗  {event.content}")
                    return 1
                else:
                    tokens = event.data.get("tokens_used")
                    print()
                    if tokens is not None:
                        print(f"  [{tokens} tokens]")
                    return 0
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")
        return 1

    print("\n  ✗  Stream ended without a terminal frame")
    return 1


def cmd_generate(args):
    """Stream a completion straight from Ollama, bypassing the relay."""
    import httpx
    from chatrelay.framing import iter_json_lines

    url = _ollama_url(args)
    payload = {"model": args.model, "prompt": " ".join(args.prompt), "stream": True}

    try:
        with httpx.stream("POST", f"{url}/api/generate", json=payload, timeout=None) as resp:
            if resp.status_code != 200:
                resp.read()
                print(f"  ✗  HTTP {resp.status_code}: {resp.text}")
                return 1
            for data in iter_json_lines(resp.iter_bytes()):
                if data.get("error"):
                    print(f"\n  ✗  {data['error']}")
                    return 1
                print(data.get("response", ""), end="", flush=True)
                if data.get("done"):
                    print()
                    print(f"  [{data.get('eval_count', '?')} tokens]")
                    return 0
    except httpx.HTTPError as e:
        print(f"  ✗  Cannot reach Ollama at {url}: {e}")
        return 1

    print()
    return 0


def cmd_add_endpoint(args):
    """Register an Ollama endpoint."""
    from chatrelay.config import get_config
    from chatrelay.storage import make_store

    store = make_store(get_config())

    async def _add():
        try:
            return await store.create_endpoint(args.name, args.base_url, is_local=args.local)
        finally:
            await store.close()

    ep = asyncio.run(_add())
    print(f"  ✓  Endpoint {ep.name} → {ep.base_url}")
    print(f"     id: {ep.id}")
    return 0


def cmd_add_user(args):
    """Create or update a user profile."""
    from chatrelay.config import get_config
    from chatrelay.storage import make_store
    from chatrelay.storage.models import Profile

    store = make_store(get_config())
    profile = Profile(id=args.user_id, email=args.email or "", role=args.role, is_active=not args.inactive)

    async def _add():
        try:
            return await store.create_profile(profile)
        finally:
            await store.close()

    saved = asyncio.run(_add())
    state = "active" if saved.is_active else "inactive"
    print(f"  ✓  User {saved.id} ({saved.role}, {state})")
    return 0


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="chatrelay: multi-user chat relay in front of Ollama.",
        epilog="Run 'chatrelay <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatrelay {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    # serve / start / up
    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"], "Start the relay server", cmd_serve, setup_serve)

    # ping / status / health
    def setup_ping(p):
        p.add_argument("--url", "-u", default=None, help="Relay URL (default: http://localhost:3001)")

    _add_command(sub, ["ping", "status", "health"], "Ping a running instance", cmd_ping, setup_ping)

    # models / tags
    def setup_models(p):
        p.add_argument("--ollama", "-o", default=None, help="Ollama URL (default: from config)")

    _add_command(sub, ["models", "tags"], "List models an Ollama endpoint serves", cmd_models, setup_models)

    # sync / sync-models
    def setup_sync(p):
        p.add_argument("endpoint_id", help="Endpoint id to pull /api/tags from")

    _add_command(sub, ["sync", "sync-models"], "Copy an endpoint's models into the store", cmd_sync, setup_sync)

    # chat / ask
    def setup_chat(p):
        p.add_argument("message", nargs="+", help="Message to send")
        p.add_argument("--conversation", "-c", required=True, help="Conversation id")
        p.add_argument("--model", "-m", required=True, help="Model id (as stored)")
        p.add_argument("--token", "-t", required=True, help="Bearer token")
        p.add_argument("--url", "-u", default=None, help="Relay URL (default: http://localhost:3001)")

    _add_command(sub, ["chat", "ask"], "Stream one message through a running relay", cmd_chat, setup_chat)

    # generate / gen
    def setup_generate(p):
        p.add_argument("prompt", nargs="+", help="Prompt text")
        p.add_argument("--model", "-m", required=True, help="Ollama model name")
        p.add_argument("--ollama", "-o", default=None, help="Ollama URL (default: from config)")

    _add_command(sub, ["generate", "gen"], "Stream straight from Ollama, no relay", cmd_generate, setup_generate)

    # add-endpoint / endpoint
    def setup_add_endpoint(p):
        p.add_argument("name", help="Display name")
        p.add_argument("base_url", help="Ollama base URL, e.g. http://gpu-box:11434")
        p.add_argument("--local", action="store_true", help="Mark as a local endpoint")

    _add_command(sub, ["add-endpoint", "endpoint"], "Register an Ollama endpoint",
                 cmd_add_endpoint, setup_add_endpoint)

    # add-user / user
    def setup_add_user(p):
        p.add_argument("user_id", help="User id (matches the auth token's subject)")
        p.add_argument("--email", "-e", default=None, help="Email address")
        p.add_argument("--role", "-r", choices=["user", "admin"], default="user", help="Role")
        p.add_argument("--inactive", action="store_true", help="Create the profile disabled")

    _add_command(sub, ["add-user", "user"], "Create or update a user profile", cmd_add_user, setup_add_user)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
