import argparse
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

PLAN_TIERS = ("free", "plus", "pro")


def resolve_db_path(override: Optional[str]) -> Path:
    if override:
        return Path(override).expanduser().resolve()
    env_path = os.getenv("DB_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path("/var/data/aura_coach.db").resolve()


def ledger_date_key() -> str:
    tz = ZoneInfo(os.getenv("LEDGER_TIMEZONE", "UTC"))
    return datetime.now(timezone.utc).astimezone(tz).date().isoformat()


def find_user_id(conn: sqlite3.Connection, email: str) -> Optional[int]:
    row = conn.execute("SELECT id FROM users WHERE lower(email) = ?", [email.strip().lower()]).fetchone()
    return int(row[0]) if row else None


def set_plan(conn: sqlite3.Connection, user_id: int, tier: str) -> int:
    cur = conn.execute("UPDATE users SET plan_tier = ? WHERE id = ?", [tier, user_id])
    return cur.rowcount if cur.rowcount is not None else 0


def reset_today(conn: sqlite3.Connection, user_id: int, date_key: str) -> int:
    cur = conn.execute("DELETE FROM usage_counters WHERE user_id = ? AND date_key = ?", [user_id, date_key])
    return cur.rowcount if cur.rowcount is not None else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Set a user's plan tier in the Aura Coach SQLite DB.")
    parser.add_argument("--email", required=True, help="User email.")
    parser.add_argument("--tier", choices=PLAN_TIERS, default=None, help="New plan tier.")
    parser.add_argument(
        "--reset-usage",
        action="store_true",
        help="Clear today's message counter for the user.",
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="Override SQLite DB path. Defaults to DB_PATH env or app default.",
    )
    args = parser.parse_args()

    if not args.tier and not args.reset_usage:
        parser.error("Use --tier <tier> and/or --reset-usage")

    db_path = resolve_db_path(args.db_path)
    if not db_path.exists():
        print(f"DB not found: {db_path}")
        return 1

    conn = sqlite3.connect(str(db_path))
    try:
        user_id = find_user_id(conn, args.email)
        print(f"Target DB: {db_path}")
        if user_id is None:
            print(f"User not found: {args.email}")
            return 1
        if args.tier:
            updated = set_plan(conn, user_id, args.tier)
            print(f"Plan tier set to {args.tier}: {updated} row(s)")
        if args.reset_usage:
            date_key = ledger_date_key()
            cleared = reset_today(conn, user_id, date_key)
            print(f"Usage counters cleared for {date_key}: {cleared} row(s)")
        conn.commit()
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
