import argparse
import asyncio
import json
import logging

from app_context import OfflineContext
from config import YamlConfig, load_settings
from db import create_local_store


async def init_store(config_path: str) -> None:
    settings = load_settings(config_path)
    store = await create_local_store(settings.storage, settings.db_path)
    print(f"Local store ready ({'sqlite: ' + settings.db_path if store.available else 'API only'})")


async def show_status(config_path: str) -> None:
    ctx = await OfflineContext.open(load_settings(config_path), auto_sync=False)
    try:
        status = await ctx.get_sync_status()
        print(json.dumps(status.to_dict(), indent=2))
    finally:
        await ctx.close()


async def run_sync(config_path: str, user_id: str | None, force: bool) -> None:
    ctx = await OfflineContext.open(load_settings(config_path), auto_sync=False)
    try:
        if user_id:
            ran = await ctx.sync_service.refresh(user_id, force=force)
        else:
            ran = await ctx.sync_service.sync_all(force=force)
        status = await ctx.get_sync_status()
        if not ran:
            print("Sync skipped (offline or already running)")
        print(json.dumps(status.to_dict(), indent=2))
    finally:
        await ctx.close()


async def run_pull(config_path: str, user_id: str) -> None:
    ctx = await OfflineContext.open(load_settings(config_path), auto_sync=False)
    try:
        summary = await ctx.sync_service.pull_from_server(user_id)
        print(json.dumps(summary, indent=2))
    finally:
        await ctx.close()


async def list_queue(config_path: str, limit: int) -> None:
    settings = load_settings(config_path)
    store = await create_local_store(settings.storage, settings.db_path)
    if store.queue is None:
        print("No local queue in API only mode")
        return
    for item in await store.queue.fetch_batch(limit):
        print(
            f"{item['id']:>5} {item['created_at']} {item['operation']:<6} "
            f"{item['entity_type']}/{item['entity_id']} retries={item['retry_count']}"
        )


async def list_failures(config_path: str, clear: bool) -> None:
    settings = load_settings(config_path)
    store = await create_local_store(settings.storage, settings.db_path)
    if store.failures is None:
        print("No local failure log in API only mode")
        return
    for item in await store.failures.fetch_all_failures():
        print(
            f"{item['failed_at']} {item['operation']:<6} {item['entity_type']}/{item['entity_id']} "
            f"status={item['status_code']} error={item['error']}"
        )
    if clear:
        await store.failures.clear()
        print("Failure log cleared")


def configure(config_path: str, api_url: str | None, token: str | None, db_path: str | None) -> None:
    cfg = YamlConfig(config_path)
    data = cfg.load()
    if api_url:
        data["api_url"] = api_url
    if token:
        data["api_token"] = token
    if db_path:
        data["db_path"] = db_path
    cfg.save(data)
    print(f"Settings written to {config_path}")


def serve(port: int) -> None:
    import uvicorn
    from dev_server import create_app

    uvicorn.run(create_app(), port=port)


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline cache and sync utilities")
    parser.add_argument("--config", default="kraftlog.yaml")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init")
    sub.add_parser("status")

    sync = sub.add_parser("sync")
    sync.add_argument("--user")
    sync.add_argument("--force", action="store_true")

    pull = sub.add_parser("pull")
    pull.add_argument("--user", required=True)

    queue = sub.add_parser("queue")
    queue.add_argument("--limit", type=int, default=50)

    failures = sub.add_parser("failures")
    failures.add_argument("--clear", action="store_true")

    conf = sub.add_parser("configure")
    conf.add_argument("--api-url")
    conf.add_argument("--token")
    conf.add_argument("--db")

    srv = sub.add_parser("serve")
    srv.add_argument("--port", type=int, default=8080)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "init":
        asyncio.run(init_store(args.config))
    elif args.cmd == "status":
        asyncio.run(show_status(args.config))
    elif args.cmd == "sync":
        asyncio.run(run_sync(args.config, args.user, args.force))
    elif args.cmd == "pull":
        asyncio.run(run_pull(args.config, args.user))
    elif args.cmd == "queue":
        asyncio.run(list_queue(args.config, args.limit))
    elif args.cmd == "failures":
        asyncio.run(list_failures(args.config, args.clear))
    elif args.cmd == "configure":
        configure(args.config, args.api_url, args.token, args.db)
    elif args.cmd == "serve":
        serve(args.port)


if __name__ == "__main__":
    main()
