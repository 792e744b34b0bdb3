"""Command-line entry point that drives the creation pipeline headlessly.

Usage:
    amico login
    amico create photo.png --name Mochi
    amico describe --gender male --name Bo
    amico resume
    amico animate biped:agree
    amico gallery list | amico gallery delete ID
    amico open ID
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from loguru import logger

from amico.core import secrets
from amico.core.asset_cache import SignedAssetCache
from amico.core.errors import AmicoError
from amico.core.image_codec import encode_image
from amico.core.logging import setup_logging
from amico.core.models import CharacterMeta
from amico.core.pipeline import PipelineConfig, PipelineOrchestrator, PipelineState
from amico.core.settings import Settings, ensure_directories, settings
from amico.core.storage import GalleryStore, SessionStore
from amico.core.style_client import GeminiStyleClient
from amico.core.task_runner import TaskUpdate
from amico.core.tripo_client import TripoClient

NEXT_STEP = {
    PipelineState.STYLED: "generate_model",
    PipelineState.MODELED: "rig",
    PipelineState.RIGGED: "animate",
}


def _report_progress(update: TaskUpdate) -> None:
    logger.info(f"{update.label or update.task_id}: {update.status.value} {update.progress}%")


@asynccontextmanager
async def open_orchestrator(config: Settings) -> AsyncIterator[PipelineOrchestrator]:
    tripo_key = secrets.resolve_key(config.tripo_api_key, secrets.TRIPO_ACCOUNT)
    if not tripo_key:
        raise SystemExit("No Tripo API key. Run `amico login` or set TRIPO_API_KEY.")
    style_key = secrets.resolve_key(config.style_api_key, secrets.STYLE_ACCOUNT) or ""

    ensure_directories(config)
    client = TripoClient(
        tripo_key,
        config.tripo_base_url,
        timeout=config.http_timeout_s,
        status_timeout=config.status_timeout_s,
    )
    style = GeminiStyleClient(style_key, config.style_base_url, config.style_model, timeout=config.style_timeout_s)
    cache = SignedAssetCache(config.database_path, config.handles_dir, timeout=config.download_timeout_s)
    orchestrator = PipelineOrchestrator(
        client=client,
        style=style,
        sessions=SessionStore(config.database_path),
        gallery=GalleryStore(config.database_path),
        cache=cache,
        config=PipelineConfig.from_settings(config),
        on_progress=_report_progress,
    )
    try:
        yield orchestrator
        await orchestrator.drain()
    finally:
        await client.aclose()
        await style.aclose()
        await cache.aclose()


async def run_to_completion(orchestrator: PipelineOrchestrator) -> Optional[str]:
    """Confirm every remaining stage until the character is animated."""
    while orchestrator.state != PipelineState.COMPLETE:
        step = NEXT_STEP.get(orchestrator.state)
        if step is None:
            raise SystemExit(f"Nothing to continue from state {orchestrator.state.value}")
        await getattr(orchestrator, step)()
    handle = orchestrator.cache.get_cached_handle(orchestrator.session.gallery_id or "", orchestrator.active_preset)
    return handle.uri if handle else orchestrator.current_asset


async def _create(config: Settings, args: argparse.Namespace) -> None:
    meta = CharacterMeta(name=args.name or "", gender=args.gender, profile=args.profile or "")
    async with open_orchestrator(config) as orchestrator:
        if args.command == "create":
            image = encode_image(args.image)
            await orchestrator.submit_image(image.data, image.mime_type, meta)
        else:
            await orchestrator.submit_description(meta)
        print(await run_to_completion(orchestrator))


async def _resume(config: Settings, args: argparse.Namespace) -> None:
    async with open_orchestrator(config) as orchestrator:
        state = orchestrator.resume()
        if state == PipelineState.IDLE:
            print("No saved session to resume.")
            return
        print(await run_to_completion(orchestrator))


async def _animate(config: Settings, args: argparse.Namespace) -> None:
    async with open_orchestrator(config) as orchestrator:
        if orchestrator.resume() != PipelineState.COMPLETE:
            raise SystemExit("Finish a character first (amico resume).")
        print(await orchestrator.request_animation(args.preset))


async def _open(config: Settings, args: argparse.Namespace) -> None:
    async with open_orchestrator(config) as orchestrator:
        reference = await orchestrator.open_entity(args.entity_id)
        print(reference or "No 3D asset available for this character.")


def _gallery(config: Settings, args: argparse.Namespace) -> None:
    ensure_directories(config)
    gallery = GalleryStore(config.database_path)
    if args.action == "list":
        for entity in gallery.list_all():
            rigged = " rigged" if entity.rig_task_id else ""
            print(f"{entity.id}  {entity.name}  {entity.created_at}{rigged}")
        return
    cache = SignedAssetCache(config.database_path, config.handles_dir)
    gallery.delete(args.entity_id)
    removed = cache.remove_for_entity(args.entity_id)
    print(f"Deleted {args.entity_id} ({removed} cached asset(s) removed)")


def _login(args: argparse.Namespace) -> None:
    tripo_key = args.tripo_key or getpass.getpass("Tripo API key: ").strip()
    if tripo_key:
        secrets.save_key(tripo_key, secrets.TRIPO_ACCOUNT)
    style_key = args.style_key or getpass.getpass("Style API key (blank to skip): ").strip()
    if style_key:
        secrets.save_key(style_key, secrets.STYLE_ACCOUNT)
    print("API keys saved.")


def _logout() -> None:
    for account in (secrets.TRIPO_ACCOUNT, secrets.STYLE_ACCOUNT):
        secrets.delete_key(account)
    print("Saved API keys removed.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="amico", description="Turn a picture into an animated 3D companion")
    commands = parser.add_subparsers(dest="command", required=True)

    login = commands.add_parser("login", help="Store API keys in the OS keyring")
    login.add_argument("--tripo-key")
    login.add_argument("--style-key")
    commands.add_parser("logout", help="Remove stored API keys")

    for name, help_text in (("create", "Create a character from a photo"), ("describe", "Create a character from notes")):
        command = commands.add_parser(name, help=help_text)
        if name == "create":
            command.add_argument("image")
        command.add_argument("--name")
        command.add_argument("--gender", choices=("female", "male"), default="female")
        command.add_argument("--profile")

    commands.add_parser("resume", help="Continue the saved session")

    animate = commands.add_parser("animate", help="Add an animation preset to the current character")
    animate.add_argument("preset")

    gallery = commands.add_parser("gallery", help="Manage saved characters")
    gallery_actions = gallery.add_subparsers(dest="action", required=True)
    gallery_actions.add_parser("list")
    delete = gallery_actions.add_parser("delete")
    delete.add_argument("entity_id")

    open_command = commands.add_parser("open", help="Resolve a saved character's 3D asset")
    open_command.add_argument("entity_id")
    return parser


def main(argv: Optional[list] = None) -> int:
    """Launch the command-line driver."""
    args = build_parser().parse_args(argv)
    setup_logging(settings)

    runners = {
        "create": _create,
        "describe": _create,
        "resume": _resume,
        "animate": _animate,
        "open": _open,
    }
    try:
        if args.command == "login":
            _login(args)
        elif args.command == "logout":
            _logout()
        elif args.command == "gallery":
            _gallery(settings, args)
        else:
            asyncio.run(runners[args.command](settings, args))
    except AmicoError as exc:
        print(f"{exc.classification}: {exc}", file=sys.stderr)
        if exc.detail:
            print(exc.detail, file=sys.stderr)
        return 1
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
