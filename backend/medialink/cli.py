import argparse
import asyncio
import json
from typing import Any, Awaitable, Callable

from medialink.core.config import Settings, get_settings
from medialink.core.context import CoreContext, build_context
from medialink.core.errors import MediaError
from medialink.core.logging_config import configure_logging
from medialink.core.security import AuthenticatedPrincipal
from medialink.core.startup_checks import signing_credential_problem, validate_production_settings
from medialink.services import media_admin
from medialink.services.job_bus import IMAGE_QUEUE, VIDEO_QUEUE
from medialink.services.video_pipeline import ffmpeg_available
from medialink.workers import media_worker

QUEUES = (IMAGE_QUEUE, VIDEO_QUEUE)
CLI_PRINCIPAL = AuthenticatedPrincipal(user_id="cli", is_admin=True)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def _with_context(settings: Settings, func: Callable[[CoreContext], Awaitable[Any]]) -> Any:
    ctx = build_context(settings)
    try:
        return await func(ctx)
    finally:
        await ctx.aclose()


async def _queue_stats(ctx: CoreContext, queues: list[str]) -> dict[str, dict[str, int]]:
    out: dict[str, dict[str, int]] = {}
    for queue in queues:
        stats = await ctx.bus.stats(queue)
        out[queue] = {
            "waiting": stats.waiting,
            "active": stats.active,
            "delayed": stats.delayed,
            "completed": stats.completed,
            "failed": stats.failed,
        }
    return out


async def _sweep(ctx: CoreContext, drain: bool) -> dict[str, Any]:
    result: dict[str, Any] = {"expired": await media_worker.sweep_once(ctx)}
    if drain:
        for queue in QUEUES:
            result[queue] = await media_worker.drain(ctx, queue, worker_id="cli")
    return result


def check_config(settings: Settings) -> list[str]:
    problems: list[str] = []
    signing = signing_credential_problem(settings)
    if signing:
        problems.append(signing)
    try:
        validate_production_settings(settings)
    except RuntimeError as exc:
        problems.append(str(exc))
    if not ffmpeg_available(settings):
        problems.append(f"ffmpeg binary {settings.ffmpeg_binary!r} is not runnable; video jobs will fail")
    return problems


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Media pipeline management commands")
    subparsers = parser.add_subparsers(dest="command")

    worker = subparsers.add_parser("worker", help="Run the media worker until interrupted")
    worker.add_argument("--queue", action="append", choices=QUEUES, help="Restrict to a queue (repeatable)")

    sweep = subparsers.add_parser("sweep", help="Requeue expired leases and purge retained jobs once")
    sweep.add_argument("--drain", action="store_true", help="Also run every due job inline")

    stats = subparsers.add_parser("queue-stats", help="Print job counts per queue")
    stats.add_argument("--queue", action="append", choices=QUEUES)

    for name, help_text in (
        ("retry", "Queue a new job for a failed descriptor"),
        ("reingest", "Rebuild the variants of a ready descriptor under a new version"),
        ("delete", "Delete a descriptor and all of its blobs"),
    ):
        cmd = subparsers.add_parser(name, help=help_text)
        cmd.add_argument("descriptor_id", type=int)

    subparsers.add_parser("check-config", help="Report configuration problems and exit non-zero if any")
    return parser


def _run_cli_command(args: argparse.Namespace, settings: Settings) -> bool:
    if args.command == "worker":
        async def _worker(ctx: CoreContext) -> None:
            await media_worker.run_media_worker(ctx, queues=args.queue)

        asyncio.run(_with_context(settings, _worker))
        return True

    if args.command == "sweep":
        _print_json(asyncio.run(_with_context(settings, lambda ctx: _sweep(ctx, args.drain))))
        return True

    if args.command == "queue-stats":
        _print_json(asyncio.run(_with_context(settings, lambda ctx: _queue_stats(ctx, args.queue or list(QUEUES)))))
        return True

    if args.command in {"retry", "reingest"}:
        action = media_admin.retry_media if args.command == "retry" else media_admin.reingest_media
        try:
            result = asyncio.run(_with_context(settings, lambda ctx: action(ctx, CLI_PRINCIPAL, args.descriptor_id)))
        except MediaError as exc:
            raise SystemExit(f"{exc.code}: {exc.detail}") from exc
        _print_json(result.model_dump())
        return True

    if args.command == "delete":
        try:
            asyncio.run(
                _with_context(settings, lambda ctx: media_admin.delete_media(ctx, CLI_PRINCIPAL, args.descriptor_id))
            )
        except MediaError as exc:
            raise SystemExit(f"{exc.code}: {exc.detail}") from exc
        _print_json({"deleted": args.descriptor_id})
        return True

    if args.command == "check-config":
        problems = check_config(settings)
        _print_json({"ok": not problems, "problems": problems})
        if problems:
            raise SystemExit(1)
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    settings = get_settings()
    configure_logging(json_logs=settings.log_json)
    if not _run_cli_command(args, settings):
        parser.print_help()


if __name__ == "__main__":
    main()
