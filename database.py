import json
import logging
import sqlite3

import redis

logger = logging.getLogger(__name__)

DB_FILE = "db.sqlite3"


class StorageError(Exception):
    """Хранилище не ответило или вернуло мусор."""


class CorruptRecordError(StorageError):
    pass


# 🗄 SQLite: одна таблица ключ → JSON
class SqliteKeyValueStore:
    def __init__(self, db_file=DB_FILE):
        self.db_file = db_file
        self.create_tables()

    def get_connection(self):
        return sqlite3.connect(self.db_file)

    def create_tables(self):
        self._execute("""
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
        """)

    def _execute(self, query, params=(), fetch=None):
        try:
            conn = self.get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute(query, params)
                if fetch == "one":
                    result = cursor.fetchone()
                elif fetch == "all":
                    result = cursor.fetchall()
                else:
                    result = None
                conn.commit()
                return result
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"SQLite error: {e}")
            raise StorageError(str(e)) from e

    def get(self, key):
        row = self._execute("SELECT value FROM kv WHERE key = ?", (key,), fetch="one")
        if not row:
            return None
        return _decode(key, row[0])

    def set(self, key, value):
        self._execute("REPLACE INTO kv (key, value) VALUES (?, ?)", (key, json.dumps(value)))

    def delete(self, key):
        self._execute("DELETE FROM kv WHERE key = ?", (key,))

    def list_keys(self, prefix):
        # substr вместо LIKE: в префиксе могут быть "_" и "%"
        rows = self._execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
            fetch="all",
        )
        return [row[0] for row in rows]


# 🧱 Redis (или Upstash по redis:// / rediss://)
class RedisKeyValueStore:
    def __init__(self, url="redis://localhost:6379/0", client=None):
        self.client = client or redis.Redis.from_url(url, decode_responses=True)

    def get(self, key):
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.error(f"Redis error on GET {key}: {e}")
            raise StorageError(str(e)) from e
        if raw is None:
            return None
        return _decode(key, raw)

    def set(self, key, value):
        try:
            self.client.set(key, json.dumps(value))
        except redis.RedisError as e:
            logger.error(f"Redis error on SET {key}: {e}")
            raise StorageError(str(e)) from e

    def delete(self, key):
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.error(f"Redis error on DEL {key}: {e}")
            raise StorageError(str(e)) from e

    def list_keys(self, prefix):
        pattern = _escape_glob(prefix) + "*"
        try:
            return sorted(self.client.scan_iter(match=pattern))
        except redis.RedisError as e:
            logger.error(f"Redis error on SCAN {pattern}: {e}")
            raise StorageError(str(e)) from e


# Для тестов и локального запуска без файла
class MemoryKeyValueStore:
    def __init__(self):
        self.data = {}

    def get(self, key):
        raw = self.data.get(key)
        return None if raw is None else _decode(key, raw)

    def set(self, key, value):
        # Храним JSON, чтобы вести себя так же, как настоящие бэкенды
        self.data[key] = json.dumps(value)

    def delete(self, key):
        self.data.pop(key, None)

    def list_keys(self, prefix):
        return sorted(k for k in self.data if k.startswith(prefix))


def _decode(key, raw):
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.error(f"Не удалось разобрать значение по ключу {key}: {e}")
        raise CorruptRecordError(f"corrupt value at {key}") from e


def _escape_glob(prefix):
    for char in ("\\", "*", "?", "[", "]"):
        prefix = prefix.replace(char, "\\" + char)
    return prefix


def get_kv_store(backend="sqlite", db_file=DB_FILE, redis_url=None):
    """
    Возвращает хранилище по имени бэкенда: sqlite / redis / memory.
    """
    backend = (backend or "sqlite").lower()
    logger.info(f"Хранилище: {backend}")

    if backend == "sqlite":
        return SqliteKeyValueStore(db_file)
    if backend == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required for the redis backend")
        return RedisKeyValueStore(redis_url)
    if backend == "memory":
        return MemoryKeyValueStore()

    raise ValueError(f"Unknown storage backend: {backend}")
