"""Runtime entrypoint for the settlement background workers."""
import argparse
import asyncio
import os
import sys
from contextlib import suppress

from sqlalchemy import select

from bookings.app.core.constants import ADMIN_IDS_LIST
from bookings.app.core.db import get_session, get_session_factory, init_db
from bookings.app.core.logger import configure_logging, get_logger
from bookings.app.domain.models import User, UserRole
from bookings.app.services import Services, build_services, default_notifier
from bookings.app.services.shared_services import utc_now
from bookings.app.workers.expiration import start_expiration_worker, start_recurring_worker, stop_worker

logger = get_logger("bookings.workers")


def _services() -> Services:
    factory = get_session_factory()
    return build_services(factory, notifier=default_notifier(factory))


# ==============================================================
# MAIN
# ==============================================================

async def main() -> None:
    if os.getenv("RUN_INIT_DB", "0").lower() in {"1", "true", "yes"}:
        await init_db()
        logger.info("Schema ensured (RUN_INIT_DB)")

    services = _services()
    stop_exp = await start_expiration_worker(services.escrow)
    stop_rec = await start_recurring_worker(services.recurrence)

    logger.info("Workers running; Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        try:
            await stop_worker(stop_exp)
        except Exception:
            logger.exception("main: stop_exp failed during shutdown")
        try:
            await stop_worker(stop_rec)
        except Exception:
            logger.exception("main: stop_rec failed during shutdown")


# ==============================================================
# CLI helpers
# ==============================================================

async def _expire_now() -> int:
    expired = await _services().escrow.expire_overdue(utc_now())
    print(f"Expired {len(expired)} settlement(s): {expired}")
    return 0


async def _materialize_now(horizon_days: int | None) -> int:
    result = await _services().recurrence.materialize_due(horizon_days=horizon_days)
    created = sum(len(drafts) for drafts in result.values())
    print(f"Materialized {created} occurrence(s) across {len(result)} series")
    return 0


async def _create_user(name: str, role: str, chat_id: int | None) -> int:
    async with get_session() as session:
        if chat_id is not None:
            res = await session.execute(select(User).where(User.chat_id == chat_id))
            if res.scalars().first():
                print("User with this chat id already exists.")
                return 1
        user = User(name=name, role=UserRole(role), chat_id=chat_id)
        session.add(user)
        await session.commit()
        print(f"User created: id={user.id}")
        return 0


async def _set_trust(user_id: int, role: str, level: int) -> int:
    profile = await _services().trust.set_level(user_id, role, level)
    print(f"Trust level for user {user_id} ({role}) is now {profile.trust_level}")
    return 0


def _require_admin(admin_id: int) -> None:
    if admin_id not in set(ADMIN_IDS_LIST):
        print("Forbidden: admin_id not allowed", file=sys.stderr)
        raise SystemExit(2)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="run_workers.py")
    parser.add_argument("--log-file", default=os.getenv("LOG_FILE"))
    sub = parser.add_subparsers(dest="cmd")

    idb = sub.add_parser("init-db")
    idb.add_argument("--force", action="store_true", help="drop and recreate all tables")

    sub.add_parser("expire-now")

    mat = sub.add_parser("materialize-now")
    mat.add_argument("--horizon-days", type=int, default=None)

    cu = sub.add_parser("create-user")
    cu.add_argument("--name", type=str, required=True)
    cu.add_argument("--role", choices=[r.value for r in UserRole], default=UserRole.CUSTOMER.value)
    cu.add_argument("--chat-id", type=int, default=None)
    cu.add_argument("--admin-id", type=int, required=True)

    st = sub.add_parser("set-trust")
    st.add_argument("--user-id", type=int, required=True)
    st.add_argument("--role", choices=[UserRole.CUSTOMER.value, UserRole.PROVIDER.value], required=True)
    st.add_argument("--level", type=int, required=True)
    st.add_argument("--admin-id", type=int, required=True)
    return parser


if __name__ == "__main__":
    args = _parser().parse_args()
    configure_logging(log_file=args.log_file)

    if args.cmd == "init-db":
        asyncio.run(init_db(force=args.force))
        print("Schema created.")
        raise SystemExit(0)
    if args.cmd == "expire-now":
        raise SystemExit(asyncio.run(_expire_now()))
    if args.cmd == "materialize-now":
        raise SystemExit(asyncio.run(_materialize_now(args.horizon_days)))
    if args.cmd == "create-user":
        _require_admin(args.admin_id)
        raise SystemExit(asyncio.run(_create_user(args.name, args.role, args.chat_id)))
    if args.cmd == "set-trust":
        _require_admin(args.admin_id)
        raise SystemExit(asyncio.run(_set_trust(args.user_id, args.role, args.level)))

    # Default behavior: run the workers
    with suppress(KeyboardInterrupt, SystemExit):
        asyncio.run(main())
