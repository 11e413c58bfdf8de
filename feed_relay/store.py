from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Iterable

from feed_relay.errors import CheckpointExistsError, SubscriptionExistsError, SubscriptionLimitError
from feed_relay.models import FeedKind, RoleMention, SourceCredential, Subscription, TrackedIncident


SCHEMA_VERSION = 2
MAX_SUBSCRIPTIONS_PER_GUILD = 10
GLOBAL_CHECKPOINT = "global"


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except ValueError:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
          id TEXT PRIMARY KEY,
          guild_id TEXT NOT NULL,
          channel_id TEXT NOT NULL,
          feed TEXT NOT NULL,
          auto_publish INTEGER NOT NULL DEFAULT 0,
          last_comment_id INTEGER,
          incidents_json TEXT NOT NULL DEFAULT '[]',
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL,
          UNIQUE(guild_id, channel_id, feed)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_feed ON subscriptions(feed);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS checkpoints (
          name TEXT PRIMARY KEY,
          value INTEGER NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS role_mentions (
          id TEXT PRIMARY KEY,
          guild_id TEXT NOT NULL,
          feed TEXT NOT NULL,
          key TEXT NOT NULL,
          role_id TEXT NOT NULL,
          created_at_ts REAL NOT NULL,
          UNIQUE(guild_id, feed, key)
        );
        """
    )


def _apply_v2(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS source_credentials (
          token TEXT PRIMARY KEY,
          usage_count INTEGER NOT NULL DEFAULT 0,
          last_used_ts REAL,
          rate_limit_remaining INTEGER NOT NULL DEFAULT 5000,
          rate_limit_reset_ts REAL,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL
        );
        """
    )


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
    elif cur == 1:
        _apply_v2(conn)
    else:
        raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")
    conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))


def _row_to_subscription(r: sqlite3.Row) -> Subscription:
    raw = _json_loads(r["incidents_json"])
    incidents = [TrackedIncident.from_dict(x) for x in raw if isinstance(x, dict)] if isinstance(raw, list) else []
    return Subscription(
        id=str(r["id"]),
        guild_id=str(r["guild_id"]),
        channel_id=str(r["channel_id"]),
        feed=FeedKind(str(r["feed"])),
        auto_publish=bool(r["auto_publish"]),
        last_comment_id=int(r["last_comment_id"]) if r["last_comment_id"] is not None else None,
        incidents=incidents,
        created_at_ts=float(r["created_at_ts"]),
    )


def _row_to_credential(r: sqlite3.Row) -> SourceCredential:
    return SourceCredential(
        token=str(r["token"]),
        usage_count=int(r["usage_count"] or 0),
        last_used_ts=float(r["last_used_ts"]) if r["last_used_ts"] is not None else None,
        rate_limit_remaining=int(r["rate_limit_remaining"]),
        rate_limit_reset_ts=float(r["rate_limit_reset_ts"]) if r["rate_limit_reset_ts"] is not None else None,
        is_active=bool(r["is_active"]),
    )


class RelayStore:
    """sqlite-backed store for subscriptions, checkpoints, role mentions and credentials.

    Every call opens its own connection, so the store can be shared between the
    webhook handlers, the poll timers and worker threads.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _conn(self) -> sqlite3.Connection:
        return _connect(self.db_path)

    def ensure_schema(self) -> None:
        conn = self._conn()
        try:
            _ensure_schema_conn(conn)
        finally:
            conn.close()

    # --- subscriptions ---

    def find_subscriptions(self, *, feed: FeedKind | None = None, guild_id: str | None = None) -> list[Subscription]:
        where: list[str] = []
        args: list[Any] = []
        if feed is not None:
            where.append("feed=?")
            args.append(feed.value)
        if guild_id is not None:
            where.append("guild_id=?")
            args.append(str(guild_id))
        sql = "SELECT * FROM subscriptions"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at_ts ASC, id ASC"
        conn = self._conn()
        try:
            return [_row_to_subscription(r) for r in conn.execute(sql, args).fetchall()]
        finally:
            conn.close()

    def find_subscription(self, subscription_id: str) -> Subscription | None:
        conn = self._conn()
        try:
            r = conn.execute("SELECT * FROM subscriptions WHERE id=?", (str(subscription_id),)).fetchone()
            return _row_to_subscription(r) if r else None
        finally:
            conn.close()

    def create_subscription(
        self,
        *,
        guild_id: str,
        channel_id: str,
        feed: FeedKind,
        auto_publish: bool = False,
        last_comment_id: int | None = None,
    ) -> Subscription:
        sub = Subscription(
            id=_uuid(),
            guild_id=str(guild_id),
            channel_id=str(channel_id),
            feed=feed,
            auto_publish=bool(auto_publish),
            last_comment_id=last_comment_id,
            created_at_ts=_utc_ts(),
        )
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                row = conn.execute("SELECT COUNT(*) AS n FROM subscriptions WHERE guild_id=?", (sub.guild_id,)).fetchone()
                if int(row["n"]) >= MAX_SUBSCRIPTIONS_PER_GUILD:
                    raise SubscriptionLimitError(
                        f"guild {sub.guild_id} already has {MAX_SUBSCRIPTIONS_PER_GUILD} subscriptions"
                    )
                conn.execute(
                    """
                    INSERT INTO subscriptions
                      (id, guild_id, channel_id, feed, auto_publish, last_comment_id, incidents_json, created_at_ts, updated_at_ts)
                    VALUES (?, ?, ?, ?, ?, ?, '[]', ?, ?)
                    """,
                    (
                        sub.id,
                        sub.guild_id,
                        sub.channel_id,
                        sub.feed.value,
                        1 if sub.auto_publish else 0,
                        sub.last_comment_id,
                        sub.created_at_ts,
                        sub.created_at_ts,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                conn.execute("ROLLBACK;")
                raise SubscriptionExistsError(
                    f"channel {sub.channel_id} is already subscribed to {sub.feed.value}"
                ) from exc
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")
            return sub
        finally:
            conn.close()

    def upsert_subscription(self, sub: Subscription) -> None:
        now = _utc_ts()
        incidents = _json_dumps([t.to_dict() for t in sub.incidents])
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO subscriptions
                  (id, guild_id, channel_id, feed, auto_publish, last_comment_id, incidents_json, created_at_ts, updated_at_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  channel_id=excluded.channel_id,
                  auto_publish=excluded.auto_publish,
                  last_comment_id=excluded.last_comment_id,
                  incidents_json=excluded.incidents_json,
                  updated_at_ts=excluded.updated_at_ts
                """,
                (
                    sub.id,
                    sub.guild_id,
                    sub.channel_id,
                    sub.feed.value,
                    1 if sub.auto_publish else 0,
                    sub.last_comment_id,
                    incidents,
                    sub.created_at_ts or now,
                    now,
                ),
            )
        finally:
            conn.close()

    def save_subscription_cursor(self, subscription_id: str, comment_id: int) -> bool:
        """Move a subscription's comment cursor forward; never backwards."""
        conn = self._conn()
        try:
            cur = conn.execute(
                """
                UPDATE subscriptions SET last_comment_id=?, updated_at_ts=?
                WHERE id=? AND (last_comment_id IS NULL OR last_comment_id < ?)
                """,
                (int(comment_id), _utc_ts(), str(subscription_id), int(comment_id)),
            )
            return cur.rowcount > 0
        finally:
            conn.close()

    def delete_subscription(self, subscription_id: str) -> bool:
        conn = self._conn()
        try:
            cur = conn.execute("DELETE FROM subscriptions WHERE id=?", (str(subscription_id),))
            return cur.rowcount > 0
        finally:
            conn.close()

    # --- checkpoints ---

    def get_checkpoint(self, name: str = GLOBAL_CHECKPOINT) -> int | None:
        conn = self._conn()
        try:
            r = conn.execute("SELECT value FROM checkpoints WHERE name=?", (name,)).fetchone()
            return int(r["value"]) if r else None
        finally:
            conn.close()

    def create_checkpoint(self, value: int, name: str = GLOBAL_CHECKPOINT) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO checkpoints (name, value, updated_at_ts) VALUES (?, ?, ?)",
                (name, int(value), _utc_ts()),
            )
        except sqlite3.IntegrityError as exc:
            raise CheckpointExistsError(f"checkpoint {name!r} already exists") from exc
        finally:
            conn.close()

    def advance_checkpoint_if_greater(self, value: int, name: str = GLOBAL_CHECKPOINT) -> bool:
        """Compare-and-set: store `value` only when it beats the stored one.

        A single statement, so concurrent writers converge on the maximum.
        """
        conn = self._conn()
        try:
            cur = conn.execute(
                """
                INSERT INTO checkpoints (name, value, updated_at_ts) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET value=excluded.value, updated_at_ts=excluded.updated_at_ts
                WHERE excluded.value > checkpoints.value
                """,
                (name, int(value), _utc_ts()),
            )
            return cur.rowcount > 0
        finally:
            conn.close()

    # --- role mentions ---

    def set_role_mention(self, *, guild_id: str, feed: FeedKind, key: str, role_id: str) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO role_mentions (id, guild_id, feed, key, role_id, created_at_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, feed, key) DO UPDATE SET role_id=excluded.role_id
                """,
                (_uuid(), str(guild_id), feed.value, str(key), str(role_id), _utc_ts()),
            )
        finally:
            conn.close()

    def remove_role_mention(self, *, guild_id: str, feed: FeedKind, key: str) -> bool:
        conn = self._conn()
        try:
            cur = conn.execute(
                "DELETE FROM role_mentions WHERE guild_id=? AND feed=? AND key=?",
                (str(guild_id), feed.value, str(key)),
            )
            return cur.rowcount > 0
        finally:
            conn.close()

    def find_role_mentions(
        self,
        *,
        guild_id: str,
        feed: FeedKind,
        keys: Iterable[str] | None = None,
    ) -> list[RoleMention]:
        sql = "SELECT * FROM role_mentions WHERE guild_id=? AND feed=?"
        args: list[Any] = [str(guild_id), feed.value]
        if keys is not None:
            wanted = [str(k) for k in keys]
            if not wanted:
                return []
            sql += " AND key IN (" + ",".join("?" for _ in wanted) + ")"
            args.extend(wanted)
        conn = self._conn()
        try:
            rows = conn.execute(sql + " ORDER BY created_at_ts ASC", args).fetchall()
        finally:
            conn.close()
        return [
            RoleMention(guild_id=str(r["guild_id"]), feed=FeedKind(str(r["feed"])), key=str(r["key"]), role_id=str(r["role_id"]))
            for r in rows
        ]

    # --- source credentials ---

    def add_credential(self, token: str) -> bool:
        t = str(token or "").strip()
        if not t:
            return False
        conn = self._conn()
        try:
            cur = conn.execute(
                "INSERT OR IGNORE INTO source_credentials (token, created_at_ts) VALUES (?, ?)",
                (t, _utc_ts()),
            )
            return cur.rowcount > 0
        finally:
            conn.close()

    def list_credentials(self, *, active_only: bool = False) -> list[SourceCredential]:
        sql = "SELECT * FROM source_credentials"
        if active_only:
            sql += " WHERE is_active=1"
        conn = self._conn()
        try:
            return [_row_to_credential(r) for r in conn.execute(sql + " ORDER BY created_at_ts ASC").fetchall()]
        finally:
            conn.close()

    def mark_credential_used(self, token: str) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "UPDATE source_credentials SET usage_count=usage_count+1, last_used_ts=? WHERE token=?",
                (_utc_ts(), token),
            )
        finally:
            conn.close()

    def update_credential_rate_limit(self, token: str, *, remaining: int, reset_ts: float | None) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "UPDATE source_credentials SET rate_limit_remaining=?, rate_limit_reset_ts=? WHERE token=?",
                (int(remaining), reset_ts, token),
            )
        finally:
            conn.close()

    def deactivate_credential(self, token: str) -> bool:
        conn = self._conn()
        try:
            cur = conn.execute("UPDATE source_credentials SET is_active=0 WHERE token=?", (token,))
            return cur.rowcount > 0
        finally:
            conn.close()
