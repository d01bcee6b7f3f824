import os
from pathlib import Path

import aiosqlite

from geonudge.logger import logger

SQL_DIR = Path(__file__).parent / "sql"
SCHEMA_VERSION = 1

conn: aiosqlite.Connection | None = None


async def init_db(db_path: str) -> None:
    """打开数据库连接并按 user_version 执行建表/升级；db_path 可为 ':memory:'"""
    global conn
    if db_path != ":memory:":
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys = ON")

    async with conn.execute("PRAGMA user_version") as cursor:
        row = await cursor.fetchone()
        user_version = row[0]

    if user_version == 0:
        init_sql = (SQL_DIR / "db_init_v1.sql").read_text(encoding="utf-8")
        await conn.executescript(init_sql)
        await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.info(f"数据库已初始化: {db_path} (schema v{SCHEMA_VERSION})")

    # 数据库升级逻辑可以在这里继续添加
    await conn.commit()


async def close_db() -> None:
    global conn
    if conn is not None:
        await conn.close()
        conn = None


__all__ = ["conn", "init_db", "close_db"]
