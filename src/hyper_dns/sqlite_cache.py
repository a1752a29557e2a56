"""SQLite backed cache of resolved keys with an in-memory LRU in front."""
import asyncio
import os
import re
from contextlib import asynccontextmanager
from typing import Optional
import aiosqlite
from .cache import LRUCache, now_ms
from .config import logger, CACHE_FILE, CACHE_MAX_SIZE

Q_CREATE_TABLE = (
    'CREATE TABLE IF NOT EXISTS {table} (name TEXT NOT NULL, protocol TEXT NOT NULL, '
    'expires INTEGER NOT NULL, key TEXT, PRIMARY KEY (name, protocol))'
)
Q_WRITE = 'REPLACE INTO {table} (name, protocol, key, expires) VALUES (:name, :protocol, :key, :expires)'
Q_CLEAR_NAME = 'DELETE FROM {table} WHERE name = :name'
Q_CLEAR = 'DELETE FROM {table}'
Q_READ = 'SELECT key, expires FROM {table} WHERE name = :name AND protocol = :protocol'
Q_FLUSH = 'DELETE FROM {table} WHERE expires < :now'

VALID_TABLE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class SQLiteCache:
    """
    Durable cache that keeps resolved keys across process restarts.

    Reads go to the LRU first and fall through to the database, writes go
    to both. The database is opened on first use, closed again after
    ``auto_close`` seconds without activity and reopened transparently.
    While open, the write-ahead log is checkpointed whenever it grows
    beyond ``max_wal_size`` bytes.

    Example:
        cache = SQLiteCache(file='/tmp/names.db')
        await cache.set('dat', 'datproject.org', {'key': key, 'expires': expires})
        entry = await cache.get('dat', 'datproject.org')
        await cache.close()
    """

    def __init__(
        self,
        file: str = CACHE_FILE,
        table: str = 'names',
        max_size: int = CACHE_MAX_SIZE,
        auto_close: float = 5.0,
        max_wal_size: int = 10 * 1024 * 1024,
        wal_check_interval: float = 5.0,
    ):
        if not VALID_TABLE.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.file = str(file)
        self.table = table
        self.auto_close = auto_close
        self.max_wal_size = max_wal_size
        self.wal_check_interval = wal_check_interval
        self.lru = LRUCache(max_size)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._active = 0
        self._close_timer = None
        self._close_task = None
        self._wal_task = None

    @property
    def is_open(self) -> bool:
        return self._db is not None

    def _query(self, query: str) -> str:
        return query.format(table=self.table)

    async def _connect(self) -> aiosqlite.Connection:
        async with self._lock:
            if self._db is None:
                logger.debug(f"opening database {self.file}: {self.table}")
                os.makedirs(os.path.dirname(os.path.abspath(self.file)), exist_ok=True)
                db = await aiosqlite.connect(self.file)
                try:
                    await db.execute('PRAGMA journal_mode = WAL')
                    await db.execute(self._query(Q_CREATE_TABLE))
                    await db.commit()
                except Exception:
                    await db.close()
                    raise
                self._db = db
                self._wal_task = asyncio.create_task(self._check_wal())
            return self._db

    @asynccontextmanager
    async def _session(self):
        """Hold the database open for the duration of one operation."""
        self._cancel_auto_close()
        self._active += 1
        try:
            yield await self._connect()
        finally:
            self._active -= 1
            if self._active == 0 and self._db is not None:
                self._schedule_auto_close()

    def _schedule_auto_close(self):
        loop = asyncio.get_running_loop()
        self._close_timer = loop.call_later(self.auto_close, self._start_idle_close)

    def _cancel_auto_close(self):
        if self._close_timer is not None:
            self._close_timer.cancel()
            self._close_timer = None

    def _start_idle_close(self):
        self._close_timer = None
        self._close_task = asyncio.ensure_future(self._close_idle())

    async def _close_idle(self):
        try:
            async with self._lock:
                if self._active == 0:
                    logger.debug(f"closing idle database {self.file}")
                    await self._close_db()
        except Exception as e:
            logger.debug(f"error while closing idle database {self.file}: {e}")

    async def _close_db(self):
        if self._wal_task is not None:
            self._wal_task.cancel()
            self._wal_task = None
        if self._db is not None:
            db, self._db = self._db, None
            await db.close()

    async def _check_wal(self):
        wal_file = f"{self.file}-wal"
        while True:
            await asyncio.sleep(self.wal_check_interval)
            try:
                size = os.path.getsize(wal_file)
            except OSError:
                continue
            if size > self.max_wal_size and self._db is not None:
                try:
                    await self._db.execute('PRAGMA wal_checkpoint(RESTART)')
                    logger.debug(f"checkpointed {wal_file} ({size} bytes)")
                except Exception as e:
                    logger.debug(f"wal checkpoint of {self.file} failed: {e}")

    async def _run(self, query: str, args: dict):
        async with self._session() as db:
            logger.debug(f"{query} -- {args}")
            await db.execute(self._query(query), args)
            await db.commit()

    async def _one(self, query: str, args: dict):
        async with self._session() as db:
            logger.debug(f"{query} -- {args}")
            async with db.execute(self._query(query), args) as cursor:
                return await cursor.fetchone()

    async def get(self, protocol: str, name: str) -> Optional[dict]:
        entry = await self.lru.get(protocol, name)
        if entry is not None:
            return entry
        try:
            row = await self._one(Q_READ, {'protocol': protocol, 'name': name})
        except Exception as e:
            logger.debug(f"error while restoring {protocol}:{name} from sqlite cache: {e}")
            return None
        if row is None:
            return None
        logger.debug(f"successfully restored {protocol}:{name} from sqlite cache")
        entry = {'key': row[0], 'expires': row[1]}
        await self.lru.set(protocol, name, entry)
        return entry

    async def set(self, protocol: str, name: str, entry: dict):
        await self.lru.set(protocol, name, entry)
        try:
            await self._run(Q_WRITE, {
                'protocol': protocol,
                'name': name,
                'key': entry['key'],
                'expires': int(entry['expires']),
            })
        except Exception as e:
            logger.warning(f"error while storing {protocol}:{name} in sqlite cache: {e}")

    async def clear(self):
        await self.lru.clear()
        await self._run(Q_CLEAR, {})

    async def clear_name(self, name: str):
        await self.lru.clear_name(name)
        await self._run(Q_CLEAR_NAME, {'name': name})

    async def flush(self):
        """Remove expired entries from memory and disk."""
        await self.lru.flush()
        await self._run(Q_FLUSH, {'now': int(now_ms())})

    async def close(self):
        self._cancel_auto_close()
        async with self._lock:
            await self._close_db()
