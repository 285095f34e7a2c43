#!/usr/bin/env python3
"""
Command-line front-end for difychat
===================================
Sign in to Dify Cloud or a self-hosted instance, inspect the session, manage
cached apps, and chat with an app.

All configuration flows through ``ClientConfig``: defaults, ``DIFYCHAT_*``
environment variables (a ``.env`` file is honoured) and CLI flags.

Run with: python -m difychat <command>
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from .apps import AppRepository
from .auth import AuthGate, InstanceResolver, JSONFileStore, SessionManager
from .client import DifyAppClient, initial_inputs, missing_inputs
from .conversations import ConversationMirror
from .errors import DifyAPIError, DifyChatError
from .run_config import ClientConfig
from .utils import create_http_session

logger = logging.getLogger(__name__)


def _load_env() -> None:
    """Load .env from the project root, else from the CWD."""
    env_path = Path(__file__).resolve().parent.parent / '.env'
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    )


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _parse_inputs(pairs) -> dict:
    inputs = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise argparse.ArgumentTypeError(f"--input expects key=value, got {pair!r}")
        key, _, value = pair.partition('=')
        inputs[key.strip()] = value
    return inputs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='difychat',
        description='Terminal client for Dify Cloud and self-hosted Dify apps',
    )
    parser.add_argument('--store', help='Credential store file (default: ~/.difychat/credentials.json)')
    parser.add_argument('--timeout', type=int, help='HTTP timeout in seconds')
    parser.add_argument('--user', help='End-user id sent with chat calls')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    sub = parser.add_subparsers(dest='command', required=True)

    login = sub.add_parser('login', help='Sign in through a browser window')
    login.add_argument('--custom', metavar='DOMAIN', help='Self-hosted instance domain')
    login.add_argument('--headless', action='store_true', help='Run the browser headless')
    login.add_argument('--paste', action='store_true',
                       help='No browser: paste the final /apps redirect URL instead')

    status = sub.add_parser('status', help='Show the current session')
    status.add_argument('--watch', action='store_true',
                        help='Keep running and print every login/logout change')
    sub.add_parser('logout', help='Clear the stored session')
    apps = sub.add_parser('apps', help='List cached apps')
    apps.add_argument('--refresh', action='store_true',
                      help='Refetch the console app list from the instance first')

    add = sub.add_parser('add-app', help='Add an app by API key')
    add.add_argument('--app-id', required=True)
    add.add_argument('--app-key', required=True)
    add.add_argument('--api-url', default=None)

    rm = sub.add_parser('remove-app', help='Remove a cached app')
    rm.add_argument('app')

    params = sub.add_parser('params', help="Show an app's prompt variables")
    params.add_argument('app')

    chat = sub.add_parser('chat', help='Send a message to an app')
    chat.add_argument('app')
    chat.add_argument('query')
    chat.add_argument('--input', action='append', metavar='KEY=VALUE', help='Prompt variable')
    chat.add_argument('--conversation', help='Continue this conversation id')

    convs = sub.add_parser('conversations', help="List an app's conversations")
    convs.add_argument('app')

    delc = sub.add_parser('delete-conversation', help='Delete a conversation')
    delc.add_argument('app')
    delc.add_argument('conversation_id')

    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _cmd_login(args, cfg: ClientConfig, session: SessionManager) -> int:
    if args.paste:
        from .auth.login_manager import LoginFlowController
        controller = LoginFlowController(session)
        if args.custom:
            url = await controller.start_custom_login(args.custom)
        else:
            url = await controller.start_cloud_login()
        print(f"\n  Open this URL in a browser and sign in:\n    {url}\n")
        redirect = input("  Paste the final URL (…/apps?access_token=…): ").strip()
        result = await controller.handle_navigation(redirect)
        if result is None or not result.success:
            await controller.cancel()
            print("  ❌ Failed to complete login process")
            return 1
    else:
        from .auth.browser_login import run_browser_login
        result = await run_browser_login(
            session,
            custom_domain=args.custom,
            headless=cfg.headless,
            timeout_seconds=cfg.login_timeout_seconds,
            user_agent=cfg.user_agent,
        )

    print(f"\n  ✅ Signed in to {result.base_url or session.instance_url}")
    print(f"  Apps cached: {len(result.apps)}\n")
    return 0


async def _cmd_status(args, cfg, session: SessionManager) -> int:
    watch = getattr(args, 'watch', False)
    async with AuthGate(session, interval=cfg.poll_interval, poll=watch) as gate:
        info = session.describe()
        print(f"\n  Surface:        {gate.root.value}")
        for key, value in info.items():
            print(f"  {key + ':':<16}{value}")
        print()
        if watch:
            gate.on_change(lambda root: print(f"  Surface:        {root.value}", flush=True))
            print("  Watching for session changes (Ctrl+C to stop)...", flush=True)
            # Runs until interrupted
            await asyncio.Event().wait()
    return 0


async def _cmd_logout(args, cfg, session: SessionManager) -> int:
    await session.logout()
    print("  Logged out.")
    return 0


async def _resolve_app(repo: AppRepository, ref: str):
    app = await repo.get(ref)
    if app is None:
        raise DifyChatError(f"Unknown app: {ref}  (see `difychat apps`)")
    return app


async def _cmd_apps(args, cfg, session: SessionManager) -> int:
    repo = AppRepository(session.store)
    if args.refresh:
        await repo.fetch_remote(session)
    apps = await repo.load()
    if not apps:
        print("  No apps yet. Sign in, or add one with `difychat add-app`.")
        return 0
    for app in apps:
        chat = "chat" if app.can_chat else "    "
        print(f"  {app.id:<38} {chat}  {app.display_name}  {app.mode}")
    return 0


async def _cmd_add_app(args, cfg, session: SessionManager) -> int:
    repo = AppRepository(session.store)
    try:
        if args.api_url:
            app = await repo.add_app(args.app_id, args.app_key, args.api_url)
        else:
            app = await repo.add_app(args.app_id, args.app_key)
    except ValueError as exc:
        print(f"  Error: {exc}")
        return 2
    print(f"  Added {app.display_name} ({app.id})")
    return 0


async def _cmd_remove_app(args, cfg, session: SessionManager) -> int:
    removed = await AppRepository(session.store).delete(args.app)
    print("  Removed." if removed else f"  No app with id {args.app}")
    return 0 if removed else 1


def _client(app, cfg: ClientConfig) -> DifyAppClient:
    try:
        return DifyAppClient(
            app,
            http=create_http_session(cfg.user_agent),
            user=cfg.user,
            timeout=cfg.request_timeout,
        )
    except ValueError as exc:
        raise DifyChatError(str(exc)) from exc


async def _cmd_params(args, cfg, session: SessionManager) -> int:
    app = await _resolve_app(AppRepository(session.store), args.app)
    variables = await _client(app, cfg).get_parameters()
    if not variables:
        print("  No prompt variables.")
    for var in variables:
        flag = "*" if var.required else " "
        print(f"  {flag} {var.key:<20} {var.type:<10} {var.name}")
    return 0


async def _cmd_chat(args, cfg, session: SessionManager) -> int:
    app = await _resolve_app(AppRepository(session.store), args.app)
    client = _client(app, cfg)

    variables = await client.get_parameters()
    inputs = initial_inputs(variables)
    inputs.update(_parse_inputs(args.input))
    missing = missing_inputs(variables, inputs)
    if missing:
        print(f"  Please fill in all required variables: {', '.join(missing)}")
        return 2

    reply = await client.send_chat_message(args.query, inputs, args.conversation)
    print(f"\n{reply.answer}\n")
    if reply.conversation_id:
        print(f"  (conversation {reply.conversation_id})")
    return 0


async def _cmd_conversations(args, cfg, session: SessionManager) -> int:
    app = await _resolve_app(AppRepository(session.store), args.app)
    conversations = await _client(app, cfg).list_conversations()
    mirror = ConversationMirror(session.store)
    await mirror.set_all(conversations)
    if not conversations:
        print("  No conversations yet. Start a new chat to begin.")
    for conv in conversations:
        print(f"  {conv.id}  {conv.title}")
    return 0


async def _cmd_delete_conversation(args, cfg, session: SessionManager) -> int:
    app = await _resolve_app(AppRepository(session.store), args.app)
    mirror = ConversationMirror(session.store)
    await mirror.load()
    await _client(app, cfg).delete_conversation(args.conversation_id, mirror=mirror)
    print("  Deleted.")
    return 0


_COMMANDS = {
    'login': _cmd_login,
    'status': _cmd_status,
    'logout': _cmd_logout,
    'apps': _cmd_apps,
    'add-app': _cmd_add_app,
    'remove-app': _cmd_remove_app,
    'params': _cmd_params,
    'chat': _cmd_chat,
    'conversations': _cmd_conversations,
    'delete-conversation': _cmd_delete_conversation,
}


async def run(args) -> int:
    cfg = ClientConfig.from_cli_args(args)
    if args.verbose:
        cfg.log_summary()

    session = SessionManager(
        JSONFileStore(cfg.store_path),
        http=create_http_session(cfg.user_agent),
        resolver=InstanceResolver(cfg.cloud_url),
        request_timeout=cfg.request_timeout,
    )
    await session.initialize()
    return await _COMMANDS[args.command](args, cfg, session)


def main(argv=None) -> int:
    _load_env()
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        return asyncio.run(run(args))
    except DifyAPIError as exc:
        print(f"  ❌ API error ({exc.status_code}): {exc.message}")
        return 1
    except (DifyChatError, argparse.ArgumentTypeError) as exc:
        print(f"  ❌ {exc}")
        return 1
    except KeyboardInterrupt:
        print("\n  Cancelled by user.")
        return 130


if __name__ == '__main__':
    sys.exit(main())
