import aiosqlite
from datetime import datetime, timezone
from typing import Any, Optional
import logging
import os

logger = logging.getLogger(__name__)

TS_FORMAT = "%Y-%m-%d %H:%M:%S"


CREATE_USERS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id TEXT UNIQUE NOT NULL,
    username TEXT,
    first_name TEXT,
    last_name TEXT,
    photo_url TEXT,
    is_subscribed INTEGER NOT NULL DEFAULT 0,
    is_admin INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

CREATE_PERSONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS historical_persons (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    name_en TEXT,
    name_key TEXT UNIQUE NOT NULL,   -- casefold(name)
    name_en_key TEXT,                -- casefold(name_en)
    description TEXT,
    era TEXT,
    country TEXT,
    birth_year INTEGER,
    death_year INTEGER,
    category TEXT,
    appearance TEXT,
    search_text TEXT,                -- casefold(name + name_en + description)
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

CREATE_GENERATIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS generations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    historical_person_id INTEGER,
    person_name TEXT NOT NULL,
    prompt TEXT,
    image_url TEXT,
    style TEXT NOT NULL DEFAULT 'realistic',
    status TEXT NOT NULL,            -- 'completed' | 'failed'
    error_message TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(historical_person_id) REFERENCES historical_persons(id) ON DELETE SET NULL
);
"""

CREATE_GENERATIONS_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_generations_user_status ON generations(user_id, status, created_at);
"""

CREATE_SUBSCRIPTION_CHECKS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS subscription_checks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    channel_id TEXT NOT NULL,
    is_subscribed INTEGER NOT NULL DEFAULT 0,
    last_checked TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, channel_id),
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);
"""

UPDATE_TRIGGER_SQL = """
CREATE TRIGGER IF NOT EXISTS users_updated_at
AFTER UPDATE ON users
FOR EACH ROW
BEGIN
  UPDATE users SET updated_at = CURRENT_TIMESTAMP WHERE id = OLD.id;
END;
"""

USER_SORT_COLUMNS = {
    "created_at": "u.created_at",
    "updated_at": "u.updated_at",
    "username": "u.username",
    "first_name": "u.first_name",
    "generations": "gen_count",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_ts(value: datetime) -> str:
    return value.strftime(TS_FORMAT)


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value[:19], TS_FORMAT)


def name_key(value: str | None) -> str:
    return " ".join((value or "").split()).casefold()


def _casefold(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).casefold()


class Database:
    def __init__(self, db_path: str = "data/portraits.db") -> None:
        self._db_path = db_path

    async def _connect(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(self._db_path, timeout=30)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys=ON;")
        await db.create_function("py_casefold", 1, _casefold, deterministic=True)
        return db

    async def init(self) -> None:
        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            await db.execute(CREATE_USERS_TABLE_SQL)
            await db.execute(UPDATE_TRIGGER_SQL)
            await db.execute(CREATE_PERSONS_TABLE_SQL)
            await db.execute(CREATE_GENERATIONS_TABLE_SQL)
            await db.execute(CREATE_GENERATIONS_INDEX_SQL)
            await db.execute(CREATE_SUBSCRIPTION_CHECKS_TABLE_SQL)
            await db.commit()

        # Ensure new columns exist
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute("PRAGMA table_info(users)") as cur:
                cols = [row[1] for row in await cur.fetchall()]
            if "photo_url" not in cols:
                await db.execute("ALTER TABLE users ADD COLUMN photo_url TEXT")
            if "is_admin" not in cols:
                await db.execute("ALTER TABLE users ADD COLUMN is_admin INTEGER NOT NULL DEFAULT 0")

            async with db.execute("PRAGMA table_info(historical_persons)") as cur:
                cols = [row[1] for row in await cur.fetchall()]
            if "appearance" not in cols:
                await db.execute("ALTER TABLE historical_persons ADD COLUMN appearance TEXT")
            if "name_en_key" not in cols:
                await db.execute("ALTER TABLE historical_persons ADD COLUMN name_en_key TEXT")
            await db.commit()

    async def ping(self) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute("SELECT 1") as cur:
                row = await cur.fetchone()
                return bool(row and row[0] == 1)

    # Users
    async def upsert_user(
        self,
        telegram_id: str,
        username: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
        photo_url: Optional[str] = None,
    ) -> dict:
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO users (telegram_id, username, first_name, last_name, photo_url)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(telegram_id) DO UPDATE SET
                    username=excluded.username,
                    first_name=excluded.first_name,
                    last_name=excluded.last_name,
                    photo_url=COALESCE(excluded.photo_url, users.photo_url)
                """,
                (str(telegram_id), username, first_name, last_name, photo_url),
            )
            await db.commit()
            async with db.execute("SELECT * FROM users WHERE telegram_id=?", (str(telegram_id),)) as cur:
                return dict(await cur.fetchone())
        finally:
            await db.close()

    async def get_user(self, user_id: int) -> dict | None:
        db = await self._connect()
        try:
            async with db.execute("SELECT * FROM users WHERE id=?", (user_id,)) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None
        finally:
            await db.close()

    async def get_user_by_telegram_id(self, telegram_id: str | int) -> dict | None:
        db = await self._connect()
        try:
            async with db.execute("SELECT * FROM users WHERE telegram_id=?", (str(telegram_id),)) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None
        finally:
            await db.close()

    async def set_user_subscribed(self, user_id: int, subscribed: bool) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("UPDATE users SET is_subscribed=? WHERE id=?", (1 if subscribed else 0, user_id))
            await db.commit()

    async def set_admin_by_telegram_id(self, telegram_id: str | int) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            cur = await db.execute("UPDATE users SET is_admin=1 WHERE telegram_id=?", (str(telegram_id),))
            await db.commit()
            return cur.rowcount > 0

    async def list_users_page(
        self,
        offset: int,
        limit: int,
        search: str | None = None,
        subscribed: bool | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[dict], int]:
        where = []
        params: list[Any] = []
        if search:
            where.append(
                "(instr(py_casefold(COALESCE(u.username,'')), ?) > 0 "
                "OR instr(py_casefold(COALESCE(u.first_name,'')), ?) > 0 "
                "OR instr(py_casefold(COALESCE(u.last_name,'')), ?) > 0 "
                "OR instr(u.telegram_id, ?) > 0)"
            )
            needle = search.casefold()
            params.extend([needle, needle, needle, search])
        if subscribed is not None:
            where.append("u.is_subscribed=?")
            params.append(1 if subscribed else 0)
        where_sql = ("WHERE " + " AND ".join(where)) if where else ""
        order_col = USER_SORT_COLUMNS.get(sort_by, "u.created_at")
        direction = "ASC" if str(sort_order).lower() == "asc" else "DESC"

        db = await self._connect()
        try:
            async with db.execute(f"SELECT COUNT(*) FROM users u {where_sql}", params) as cur:
                total = (await cur.fetchone())[0]
            async with db.execute(
                f"""
                SELECT u.*, COALESCE(g.cnt, 0) AS gen_count
                FROM users u
                LEFT JOIN (SELECT user_id, COUNT(*) AS cnt FROM generations GROUP BY user_id) g
                    ON g.user_id = u.id
                {where_sql}
                ORDER BY {order_col} {direction}, u.id {direction}
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            ) as cur:
                rows = [dict(r) for r in await cur.fetchall()]
            return rows, int(total)
        finally:
            await db.close()

    async def user_generation_stats(self, user_ids: list[int], today_start: str) -> dict[int, dict]:
        if not user_ids:
            return {}
        marks = ",".join("?" for _ in user_ids)
        db = await self._connect()
        try:
            async with db.execute(
                f"""
                SELECT user_id,
                       COUNT(*) AS total,
                       SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END) AS successful,
                       SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END) AS failed,
                       SUM(CASE WHEN status='completed' AND created_at >= ? THEN 1 ELSE 0 END) AS today,
                       MAX(created_at) AS last_generation_at
                FROM generations
                WHERE user_id IN ({marks})
                GROUP BY user_id
                """,
                [today_start, *user_ids],
            ) as cur:
                return {int(r["user_id"]): dict(r) for r in await cur.fetchall()}
        finally:
            await db.close()

    # Historical persons
    async def get_person(self, person_id: int) -> dict | None:
        db = await self._connect()
        try:
            async with db.execute("SELECT * FROM historical_persons WHERE id=?", (person_id,)) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None
        finally:
            await db.close()

    async def find_person_by_name(self, name: str) -> dict | None:
        key = name_key(name)
        if not key:
            return None
        db = await self._connect()
        try:
            async with db.execute(
                "SELECT * FROM historical_persons WHERE name_key=? OR name_en_key=? ORDER BY id LIMIT 1",
                (key, key),
            ) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None
        finally:
            await db.close()

    async def create_person(
        self,
        name: str,
        description: str | None = None,
        era: str | None = None,
        country: str | None = None,
        birth_year: int | None = None,
        death_year: int | None = None,
        category: str | None = None,
        name_en: str | None = None,
        appearance: str | None = None,
    ) -> dict:
        """Создаёт запись о личности. При совпадении имени возвращает существующую."""
        search_text = name_key(" ".join(p for p in (name, name_en, description) if p))
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO historical_persons
                    (name, name_en, name_key, name_en_key, description, era, country,
                     birth_year, death_year, category, appearance, search_text)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name_key) DO NOTHING
                """,
                (
                    name, name_en, name_key(name), name_key(name_en) or None, description, era, country,
                    birth_year, death_year, category, appearance, search_text,
                ),
            )
            await db.commit()
            async with db.execute("SELECT * FROM historical_persons WHERE name_key=?", (name_key(name),)) as cur:
                return dict(await cur.fetchone())
        finally:
            await db.close()

    async def search_persons(self, query: str, limit: int = 20) -> list[dict]:
        needle = name_key(query)
        db = await self._connect()
        try:
            async with db.execute(
                """
                SELECT * FROM historical_persons
                WHERE instr(search_text, ?) > 0
                ORDER BY CASE WHEN instr(name_key, ?) = 1 THEN 0 ELSE 1 END, name
                LIMIT ?
                """,
                (needle, needle, limit),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        finally:
            await db.close()

    async def list_persons(
        self, era: str | None = None, category: str | None = None, limit: int = 20, offset: int = 0
    ) -> tuple[list[dict], int]:
        where = []
        params: list[Any] = []
        if era:
            where.append("era = ? COLLATE NOCASE")
            params.append(era)
        if category:
            where.append("category = ? COLLATE NOCASE")
            params.append(category)
        where_sql = ("WHERE " + " AND ".join(where)) if where else ""
        db = await self._connect()
        try:
            async with db.execute(f"SELECT COUNT(*) FROM historical_persons {where_sql}", params) as cur:
                total = (await cur.fetchone())[0]
            async with db.execute(
                f"SELECT * FROM historical_persons {where_sql} ORDER BY name LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ) as cur:
                rows = [dict(r) for r in await cur.fetchall()]
            return rows, int(total)
        finally:
            await db.close()

    # Generations
    async def create_generation(
        self,
        user_id: int,
        person_name: str,
        status: str,
        historical_person_id: int | None = None,
        prompt: str | None = None,
        image_url: str | None = None,
        style: str = "realistic",
        error_message: str | None = None,
        created_at: datetime | None = None,
    ) -> int:
        async with aiosqlite.connect(self._db_path) as db:
            cur = await db.execute(
                """
                INSERT INTO generations
                    (user_id, historical_person_id, person_name, prompt, image_url, style, status, error_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, historical_person_id, person_name, prompt, image_url, style, status,
                    error_message, format_ts(created_at or utcnow()),
                ),
            )
            await db.commit()
            return int(cur.lastrowid)

    async def get_generation(self, generation_id: int) -> dict | None:
        db = await self._connect()
        try:
            async with db.execute("SELECT * FROM generations WHERE id=?", (generation_id,)) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None
        finally:
            await db.close()

    async def delete_generation(self, generation_id: int) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM generations WHERE id=?", (generation_id,))
            await db.commit()

    async def count_completed_since(self, user_id: int, since: datetime) -> int:
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM generations WHERE user_id=? AND status='completed' AND created_at >= ?",
                (user_id, format_ts(since)),
            ) as cur:
                return int((await cur.fetchone())[0])

    async def list_user_generations(self, user_id: int, limit: int = 20, offset: int = 0) -> tuple[list[dict], int]:
        db = await self._connect()
        try:
            async with db.execute(
                "SELECT COUNT(*) FROM generations WHERE user_id=? AND status='completed'", (user_id,)
            ) as cur:
                total = (await cur.fetchone())[0]
            async with db.execute(
                """
                SELECT g.*, p.name AS hp_name, p.era AS hp_era
                FROM generations g
                LEFT JOIN historical_persons p ON p.id = g.historical_person_id
                WHERE g.user_id=? AND g.status='completed'
                ORDER BY g.created_at DESC, g.id DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset),
            ) as cur:
                rows = [dict(r) for r in await cur.fetchall()]
            return rows, int(total)
        finally:
            await db.close()

    async def list_public_generations(self, limit: int = 12) -> list[dict]:
        db = await self._connect()
        try:
            async with db.execute(
                """
                SELECT id, image_url, person_name, created_at FROM generations
                WHERE status='completed' AND image_url IS NOT NULL AND image_url != ''
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        finally:
            await db.close()

    # Subscription checks
    async def upsert_subscription_check(
        self, user_id: int, channel_id: str, is_subscribed: bool, checked_at: datetime | None = None
    ) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """
                INSERT INTO subscription_checks (user_id, channel_id, is_subscribed, last_checked)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, channel_id) DO UPDATE SET
                    is_subscribed=excluded.is_subscribed,
                    last_checked=excluded.last_checked
                """,
                (user_id, str(channel_id), 1 if is_subscribed else 0, format_ts(checked_at or utcnow())),
            )
            await db.commit()

    async def get_subscription_check(self, user_id: int, channel_id: str | None = None) -> dict | None:
        db = await self._connect()
        try:
            if channel_id:
                sql = "SELECT * FROM subscription_checks WHERE user_id=? AND channel_id=?"
                params: tuple = (user_id, str(channel_id))
            else:
                sql = "SELECT * FROM subscription_checks WHERE user_id=? ORDER BY last_checked DESC LIMIT 1"
                params = (user_id,)
            async with db.execute(sql, params) as cur:
                row = await cur.fetchone()
                return dict(row) if row else None
        finally:
            await db.close()

    # Statistics
    async def get_overview_stats(self) -> dict:
        async with aiosqlite.connect(self._db_path) as db:
            stats = {}
            async with db.execute("SELECT COUNT(*), COALESCE(SUM(is_subscribed), 0) FROM users") as cur:
                row = await cur.fetchone()
                stats["total_users"], stats["subscribed_users"] = int(row[0]), int(row[1])
            async with db.execute(
                "SELECT COUNT(*), "
                "COALESCE(SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END), 0), "
                "COALESCE(SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END), 0) "
                "FROM generations"
            ) as cur:
                row = await cur.fetchone()
                stats["total_generations"] = int(row[0])
                stats["successful_generations"] = int(row[1])
                stats["failed_generations"] = int(row[2])
            async with db.execute("SELECT COUNT(*) FROM historical_persons") as cur:
                stats["total_persons"] = int((await cur.fetchone())[0])
            return stats

    async def get_period_stats(self, since: datetime) -> dict:
        since_s = format_ts(since)
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM users WHERE created_at >= ?", (since_s,)) as cur:
                new_users = int((await cur.fetchone())[0])
            async with db.execute("SELECT COUNT(*) FROM generations WHERE created_at >= ?", (since_s,)) as cur:
                generations = int((await cur.fetchone())[0])
            return {"new_users": new_users, "generations": generations}

    async def get_daily_stats(self, since: datetime) -> list[dict]:
        db = await self._connect()
        try:
            async with db.execute(
                """
                SELECT date(created_at) AS day,
                       COUNT(*) AS total,
                       SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END) AS successful,
                       SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END) AS failed,
                       COUNT(DISTINCT user_id) AS unique_users
                FROM generations
                WHERE created_at >= ?
                GROUP BY day
                ORDER BY day
                """,
                (format_ts(since),),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        finally:
            await db.close()

    async def get_top_users(self, since: datetime, limit: int = 10) -> list[dict]:
        db = await self._connect()
        try:
            async with db.execute(
                """
                SELECT u.id, u.telegram_id, u.username, u.first_name, u.last_name, COUNT(g.id) AS generations
                FROM generations g
                JOIN users u ON u.id = g.user_id
                WHERE g.status='completed' AND g.created_at >= ?
                GROUP BY u.id
                ORDER BY generations DESC, u.id
                LIMIT ?
                """,
                (format_ts(since), limit),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        finally:
            await db.close()

    async def get_top_persons(self, since: datetime, limit: int = 10) -> list[dict]:
        db = await self._connect()
        try:
            async with db.execute(
                """
                SELECT g.historical_person_id AS person_id,
                       COALESCE(p.name, g.person_name) AS name,
                       p.era AS era,
                       COUNT(g.id) AS generations
                FROM generations g
                LEFT JOIN historical_persons p ON p.id = g.historical_person_id
                WHERE g.status='completed' AND g.created_at >= ?
                GROUP BY COALESCE(CAST(g.historical_person_id AS TEXT), g.person_name)
                ORDER BY generations DESC, name
                LIMIT ?
                """,
                (format_ts(since), limit),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        finally:
            await db.close()

    async def get_activity(self, since: datetime, group_by: str = "hour") -> list[dict]:
        bucket = "strftime('%Y-%m-%d %H:00', created_at)" if group_by == "hour" else "date(created_at)"
        db = await self._connect()
        try:
            async with db.execute(
                f"""
                SELECT {bucket} AS bucket,
                       COUNT(*) AS total,
                       SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END) AS successful,
                       SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END) AS failed,
                       COUNT(DISTINCT user_id) AS unique_users
                FROM generations
                WHERE created_at >= ?
                GROUP BY bucket
                ORDER BY bucket
                """,
                (format_ts(since),),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        finally:
            await db.close()

    async def get_top_active_users(self, since: datetime, limit: int = 20) -> list[dict]:
        db = await self._connect()
        try:
            async with db.execute(
                """
                SELECT u.id, u.telegram_id, u.username, u.first_name,
                       COUNT(g.id) AS total,
                       SUM(CASE WHEN g.status='completed' THEN 1 ELSE 0 END) AS successful,
                       SUM(CASE WHEN g.status='failed' THEN 1 ELSE 0 END) AS failed,
                       MAX(g.created_at) AS last_activity
                FROM generations g
                JOIN users u ON u.id = g.user_id
                WHERE g.created_at >= ?
                GROUP BY u.id
                ORDER BY total DESC, u.id
                LIMIT ?
                """,
                (format_ts(since), limit),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        finally:
            await db.close()
