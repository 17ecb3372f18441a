from __future__ import annotations

"""
WorldInfo_DB
SQLite store for world-info books, bindings, per-owner settings and timed effects.

Tables:
  world_info_books          -- one row per book; entries live in data_json
  world_info_settings       -- one row per owner; normalized settings as JSON
  world_info_bindings       -- (owner, scope, scope_id) -> book attachments
  world_info_timed_effects  -- sticky/cooldown windows keyed by
                               (owner, chat, branch, entry_hash, effect_type)

SQL stays inside DB_Management; callers receive the pydantic models from
``world_info_types``. Every public method opens its own connection under a
per-instance RLock, so one instance is safe to share across threads
(the async engine calls it through ``asyncio.to_thread``).
"""

import json
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from loguru import logger

from lorewright_Server_API.app.core.config import load_world_info_config
from lorewright_Server_API.app.core.World_Info.world_info_exceptions import (
    WorldInfoConflictError,
    WorldInfoDatabaseError,
    WorldInfoErrorCode,
    WorldInfoInputError,
    WorldInfoNotFoundError,
)
from lorewright_Server_API.app.core.World_Info.world_info_normalizer import (
    normalize_world_info_book_payload,
    normalize_world_info_settings,
    slugify_world_info_name,
)
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    MAX_WORLD_INFO_BOOK_BYTES,
    MAX_WORLD_INFO_ENTRIES_PER_BOOK,
    MAX_WORLD_INFO_ENTRY_CONTENT_CHARS,
    BindingScope,
    BookSource,
    TimedEffectUpsert,
    WorldInfoBinding,
    WorldInfoBindingInput,
    WorldInfoBook,
    WorldInfoBookData,
    WorldInfoSettings,
    WorldInfoTimedEffect,
    build_default_world_info_settings,
)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _loads(raw: Optional[str], fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable JSON column in world-info store")
        return fallback


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def validate_book_limits(data: WorldInfoBookData) -> None:
    """Raise ``WorldInfoInputError`` when a book payload exceeds the storage limits."""
    size = len(_dumps(data.model_dump(by_alias=True, mode="json")).encode("utf-8"))
    if size > MAX_WORLD_INFO_BOOK_BYTES:
        raise WorldInfoInputError(
            f"World-info book is {size} bytes; limit is {MAX_WORLD_INFO_BOOK_BYTES}",
            code=WorldInfoErrorCode.VAL_BOOK_TOO_LARGE,
            details={"bytes": size},
        )
    if len(data.entries) > MAX_WORLD_INFO_ENTRIES_PER_BOOK:
        raise WorldInfoInputError(
            f"World-info book has {len(data.entries)} entries; limit is {MAX_WORLD_INFO_ENTRIES_PER_BOOK}",
            code=WorldInfoErrorCode.VAL_TOO_MANY_ENTRIES,
            details={"entries": len(data.entries)},
        )
    for key, entry in data.entries.items():
        content = entry.get("content") or ""
        if len(content) > MAX_WORLD_INFO_ENTRY_CONTENT_CHARS:
            raise WorldInfoInputError(
                f"World-info entry {key} content exceeds {MAX_WORLD_INFO_ENTRY_CONTENT_CHARS} characters",
                code=WorldInfoErrorCode.VAL_ENTRY_TOO_LONG,
                details={"entry": key, "chars": len(content)},
            )


class WorldInfoDB:
    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or load_world_info_config().db_path
        self._lock = threading.RLock()
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.error(f"World-info DB error on {self.db_path}: {e}")
                raise WorldInfoDatabaseError(f"World-info database operation failed: {e}", cause=e) from e
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS world_info_books (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    data_json TEXT NOT NULL,
                    extensions_json TEXT,
                    source TEXT NOT NULL DEFAULT 'native',
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    deleted_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS world_info_settings (
                    owner_id TEXT PRIMARY KEY,
                    settings_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS world_info_bindings (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    scope_id TEXT,
                    book_id TEXT NOT NULL,
                    binding_role TEXT NOT NULL DEFAULT 'additional',
                    display_order INTEGER NOT NULL DEFAULT 0,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    meta_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS world_info_timed_effects (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    chat_id TEXT NOT NULL,
                    branch_id TEXT NOT NULL,
                    entry_hash TEXT NOT NULL,
                    book_id TEXT NOT NULL,
                    entry_uid INTEGER NOT NULL,
                    effect_type TEXT NOT NULL,
                    start_message_index INTEGER NOT NULL,
                    end_message_index INTEGER NOT NULL,
                    protected INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (owner_id, chat_id, branch_id, entry_hash, effect_type)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wi_books_owner ON world_info_books(owner_id, deleted_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wi_bindings_scope ON world_info_bindings(owner_id, scope, scope_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wi_effects_chat ON world_info_timed_effects(owner_id, chat_id, branch_id)")

    ###################################################################################################################
    # Books

    @staticmethod
    def _row_to_book(row: sqlite3.Row) -> WorldInfoBook:
        return WorldInfoBook(
            id=row["id"],
            owner_id=row["owner_id"],
            slug=row["slug"],
            name=row["name"],
            description=row["description"],
            data=normalize_world_info_book_payload(_loads(row["data_json"], {})),
            extensions=_loads(row["extensions_json"], {}) or {},
            source=row["source"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    @staticmethod
    def _resolve_unique_slug(
        conn: sqlite3.Connection,
        owner_id: str,
        preferred: str,
        exclude_book_id: Optional[str] = None,
    ) -> str:
        taken = {
            row["slug"]
            for row in conn.execute(
                "SELECT slug FROM world_info_books WHERE owner_id = ? AND deleted_at IS NULL AND id != ?",
                (owner_id, exclude_book_id or ""),
            )
        }
        if preferred not in taken:
            return preferred
        suffix = 2
        while f"{preferred}-{suffix}" in taken:
            suffix += 1
        return f"{preferred}-{suffix}"

    def create_book(
        self,
        owner_id: str,
        name: str,
        data: Any = None,
        description: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        source: str = BookSource.NATIVE.value,
        slug: Optional[str] = None,
    ) -> WorldInfoBook:
        name = (name or "").strip()
        if not name:
            raise WorldInfoInputError("World-info book name is required")
        if source not in {s.value for s in BookSource}:
            raise WorldInfoInputError(f"Unknown world-info book source: {source}")
        payload = normalize_world_info_book_payload(data or {})
        validate_book_limits(payload)

        book_id = _new_id()
        now = _utcnow_iso()
        with self._transaction() as conn:
            unique_slug = self._resolve_unique_slug(conn, owner_id, slug or slugify_world_info_name(name))
            conn.execute(
                """
                INSERT INTO world_info_books (
                    id, owner_id, slug, name, description, data_json, extensions_json,
                    source, version, created_at, updated_at, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, NULL)
                """,
                (
                    book_id,
                    owner_id,
                    unique_slug,
                    name,
                    description,
                    _dumps(payload.model_dump(by_alias=True, mode="json")),
                    _dumps(extensions or {}),
                    source,
                    now,
                    now,
                ),
            )
        logger.info(f"Created world-info book {book_id} ({unique_slug}) with {len(payload.entries)} entries")
        return self.get_book(owner_id, book_id)

    def get_book(self, owner_id: str, book_id: str, include_deleted: bool = False) -> Optional[WorldInfoBook]:
        sql = "SELECT * FROM world_info_books WHERE owner_id = ? AND id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        with self._transaction() as conn:
            row = conn.execute(sql, (owner_id, book_id)).fetchone()
        return self._row_to_book(row) if row else None

    def get_books_by_ids(self, owner_id: str, ids: Sequence[str]) -> List[WorldInfoBook]:
        """Live books for ``ids`` in the order given; missing or deleted ids are dropped."""
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM world_info_books WHERE owner_id = ? AND deleted_at IS NULL AND id IN ({placeholders})",
                (owner_id, *ids),
            ).fetchall()
        by_id = {row["id"]: self._row_to_book(row) for row in rows}
        return [by_id[book_id] for book_id in ids if book_id in by_id]

    def list_books(self, owner_id: str, query: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[WorldInfoBook]:
        limit = max(1, min(200, int(limit)))
        clauses = ["owner_id = ?", "deleted_at IS NULL"]
        params: List[Any] = [owner_id]
        if query and query.strip():
            clauses.append("(name LIKE ? OR slug LIKE ? OR description LIKE ?)")
            like = f"%{query.strip()}%"
            params.extend([like, like, like])
        params.extend([limit, max(0, int(offset))])
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM world_info_books WHERE {' AND '.join(clauses)} "
                "ORDER BY updated_at DESC, id ASC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [self._row_to_book(row) for row in rows]

    def update_book(
        self,
        owner_id: str,
        book_id: str,
        expected_version: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        data: Any = None,
        extensions: Optional[Dict[str, Any]] = None,
    ) -> WorldInfoBook:
        """Apply changes if ``expected_version`` still matches; bumps the version."""
        current = self.get_book(owner_id, book_id)
        if current is None:
            raise WorldInfoNotFoundError(f"World-info book {book_id} not found", details={"book_id": book_id})

        new_name = name.strip() if isinstance(name, str) and name.strip() else current.name
        payload = normalize_world_info_book_payload(data) if data is not None else current.data
        validate_book_limits(payload)

        with self._transaction() as conn:
            slug = current.slug
            if new_name != current.name:
                slug = self._resolve_unique_slug(conn, owner_id, slugify_world_info_name(new_name), book_id)
            cur = conn.execute(
                """
                UPDATE world_info_books
                SET name = ?, slug = ?, description = ?, data_json = ?, extensions_json = ?,
                    version = version + 1, updated_at = ?
                WHERE owner_id = ? AND id = ? AND version = ? AND deleted_at IS NULL
                """,
                (
                    new_name,
                    slug,
                    description if description is not None else current.description,
                    _dumps(payload.model_dump(by_alias=True, mode="json")),
                    _dumps(extensions if extensions is not None else current.extensions),
                    _utcnow_iso(),
                    owner_id,
                    book_id,
                    expected_version,
                ),
            )
            if cur.rowcount == 0:
                raise WorldInfoConflictError(
                    f"World-info book {book_id} was modified concurrently",
                    details={"book_id": book_id, "expected_version": expected_version},
                )
        logger.info(f"Updated world-info book {book_id} to version {expected_version + 1}")
        return self.get_book(owner_id, book_id)

    def soft_delete_book(self, owner_id: str, book_id: str) -> bool:
        now = _utcnow_iso()
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE world_info_books SET deleted_at = ?, updated_at = ? "
                "WHERE owner_id = ? AND id = ? AND deleted_at IS NULL",
                (now, now, owner_id, book_id),
            )
            deleted = cur.rowcount > 0
            if deleted:
                conn.execute("DELETE FROM world_info_bindings WHERE owner_id = ? AND book_id = ?", (owner_id, book_id))
        if deleted:
            logger.info(f"Soft-deleted world-info book {book_id}")
        return deleted

    def duplicate_book(self, owner_id: str, book_id: str, name: Optional[str] = None) -> WorldInfoBook:
        source = self.get_book(owner_id, book_id)
        if source is None:
            raise WorldInfoNotFoundError(f"World-info book {book_id} not found", details={"book_id": book_id})
        return self.create_book(
            owner_id,
            name or f"{source.name} (copy)",
            data=source.data.model_dump(by_alias=True),
            description=source.description,
            extensions=source.extensions,
            source=source.source,
        )

    ###################################################################################################################
    # Settings

    def get_settings(self, owner_id: str) -> WorldInfoSettings:
        """Settings for ``owner_id``, creating the configured defaults on first access."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM world_info_settings WHERE owner_id = ?", (owner_id,)).fetchone()
            if row is None:
                settings = build_default_world_info_settings(owner_id, load_world_info_config().settings_defaults())
                now = _utcnow_iso()
                conn.execute(
                    "INSERT INTO world_info_settings (owner_id, settings_json, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (owner_id, _dumps(settings.model_dump(by_alias=True, mode="json", exclude={"created_at", "updated_at"})), now, now),
                )
                created = datetime.fromisoformat(now)
                return settings.model_copy(update={"created_at": created, "updated_at": created})
        stored = normalize_world_info_settings(_loads(row["settings_json"], {}))
        return stored.model_copy(
            update={
                "owner_id": owner_id,
                "created_at": datetime.fromisoformat(row["created_at"]),
                "updated_at": datetime.fromisoformat(row["updated_at"]),
            }
        )

    def patch_settings(self, owner_id: str, patch: Dict[str, Any]) -> WorldInfoSettings:
        current = self.get_settings(owner_id)
        updated = normalize_world_info_settings(patch, current=current)
        updated = updated.model_copy(update={"owner_id": owner_id})
        with self._transaction() as conn:
            conn.execute(
                "UPDATE world_info_settings SET settings_json = ?, updated_at = ? WHERE owner_id = ?",
                (
                    _dumps(updated.model_dump(by_alias=True, mode="json", exclude={"created_at", "updated_at"})),
                    _utcnow_iso(),
                    owner_id,
                ),
            )
        logger.info(f"Updated world-info settings for owner {owner_id}")
        return self.get_settings(owner_id)

    ###################################################################################################################
    # Bindings

    @staticmethod
    def _row_to_binding(row: sqlite3.Row) -> WorldInfoBinding:
        return WorldInfoBinding(
            id=row["id"],
            owner_id=row["owner_id"],
            scope=row["scope"],
            scope_id=row["scope_id"],
            book_id=row["book_id"],
            binding_role=row["binding_role"],
            display_order=row["display_order"],
            enabled=bool(row["enabled"]),
            meta=_loads(row["meta_json"], {}) or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _check_scope(scope: str, scope_id: Optional[str]) -> Optional[str]:
        if scope not in {s.value for s in BindingScope}:
            raise WorldInfoInputError(f"Unknown binding scope: {scope}", code=WorldInfoErrorCode.VAL_INVALID_SCOPE)
        if scope == BindingScope.GLOBAL.value:
            return None
        if not scope_id:
            raise WorldInfoInputError(f"Binding scope {scope} requires a scope id", code=WorldInfoErrorCode.VAL_INVALID_SCOPE)
        return scope_id

    def list_bindings(self, owner_id: str, scope: str, scope_id: Optional[str]) -> List[WorldInfoBinding]:
        scope_id = self._check_scope(scope, scope_id)
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM world_info_bindings WHERE owner_id = ? AND scope = ? AND scope_id IS ? "
                "ORDER BY display_order ASC, created_at ASC, id ASC",
                (owner_id, scope, scope_id),
            ).fetchall()
        return [self._row_to_binding(row) for row in rows]

    def replace_bindings(
        self,
        owner_id: str,
        scope: str,
        scope_id: Optional[str],
        items: Sequence[WorldInfoBindingInput],
    ) -> List[WorldInfoBinding]:
        """
        Make the bindings of one scope equal to ``items``.

        Existing bindings for a listed book are updated in place (keeping
        their id and creation time), new books are inserted, unlisted books
        are unbound. A book listed twice keeps its last settings.
        """
        scope_id = self._check_scope(scope, scope_id)
        wanted: Dict[str, WorldInfoBindingInput] = {item.book_id: item for item in items}
        live_ids = {book.id for book in self.get_books_by_ids(owner_id, list(wanted))}
        missing = [book_id for book_id in wanted if book_id not in live_ids]
        if missing:
            raise WorldInfoNotFoundError(f"World-info book(s) not found: {', '.join(missing)}", details={"book_ids": missing})

        now = _utcnow_iso()
        with self._transaction() as conn:
            existing = {
                row["book_id"]: row["id"]
                for row in conn.execute(
                    "SELECT id, book_id FROM world_info_bindings WHERE owner_id = ? AND scope = ? AND scope_id IS ?",
                    (owner_id, scope, scope_id),
                )
            }
            for book_id, binding_id in existing.items():
                if book_id not in wanted:
                    conn.execute("DELETE FROM world_info_bindings WHERE id = ?", (binding_id,))
            for book_id, item in wanted.items():
                values = (item.binding_role, item.display_order, int(item.enabled), _dumps(item.meta), now)
                if book_id in existing:
                    conn.execute(
                        "UPDATE world_info_bindings SET binding_role = ?, display_order = ?, enabled = ?, "
                        "meta_json = ?, updated_at = ? WHERE id = ?",
                        (*values, existing[book_id]),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO world_info_bindings (
                            id, owner_id, scope, scope_id, book_id, binding_role, display_order,
                            enabled, meta_json, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (_new_id(), owner_id, scope, scope_id, book_id, *values[:4], now, now),
                    )
        logger.info(f"Replaced {scope} world-info bindings for {scope_id or 'owner'}: {len(wanted)} book(s)")
        return self.list_bindings(owner_id, scope, scope_id)

    ###################################################################################################################
    # Timed effects

    @staticmethod
    def _row_to_effect(row: sqlite3.Row) -> WorldInfoTimedEffect:
        return WorldInfoTimedEffect(
            id=row["id"],
            owner_id=row["owner_id"],
            chat_id=row["chat_id"],
            branch_id=row["branch_id"],
            entry_hash=row["entry_hash"],
            book_id=row["book_id"],
            entry_uid=row["entry_uid"],
            effect_type=row["effect_type"],
            start_message_index=row["start_message_index"],
            end_message_index=row["end_message_index"],
            protected=bool(row["protected"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_timed_effects(self, owner_id: str, chat_id: str, branch_id: str) -> List[WorldInfoTimedEffect]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM world_info_timed_effects WHERE owner_id = ? AND chat_id = ? AND branch_id = ? "
                "ORDER BY created_at ASC, id ASC",
                (owner_id, chat_id, branch_id),
            ).fetchall()
        return [self._row_to_effect(row) for row in rows]

    def delete_timed_effects_by_ids(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._transaction() as conn:
            cur = conn.execute(f"DELETE FROM world_info_timed_effects WHERE id IN ({placeholders})", tuple(ids))
            return cur.rowcount

    def upsert_timed_effect(self, effect: TimedEffectUpsert) -> WorldInfoTimedEffect:
        """Insert or refresh the window for (owner, chat, branch, entry_hash, effect_type)."""
        now = _utcnow_iso()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO world_info_timed_effects (
                    id, owner_id, chat_id, branch_id, entry_hash, book_id, entry_uid, effect_type,
                    start_message_index, end_message_index, protected, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner_id, chat_id, branch_id, entry_hash, effect_type) DO UPDATE SET
                    book_id = excluded.book_id,
                    entry_uid = excluded.entry_uid,
                    start_message_index = excluded.start_message_index,
                    end_message_index = excluded.end_message_index,
                    protected = excluded.protected,
                    updated_at = excluded.updated_at
                """,
                (
                    _new_id(),
                    effect.owner_id,
                    effect.chat_id,
                    effect.branch_id,
                    effect.entry_hash,
                    effect.book_id,
                    effect.entry_uid,
                    effect.effect_type,
                    effect.start_message_index,
                    effect.end_message_index,
                    int(effect.protected),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM world_info_timed_effects WHERE owner_id = ? AND chat_id = ? AND branch_id = ? "
                "AND entry_hash = ? AND effect_type = ?",
                (effect.owner_id, effect.chat_id, effect.branch_id, effect.entry_hash, effect.effect_type),
            ).fetchone()
        return self._row_to_effect(row)
