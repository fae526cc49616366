from __future__ import annotations

"""
SQLite-backed store for tracked shows, filter rules, and download history.

One connection, one lock. Every method takes the lock, so the tracker's worker
threads can share a store without stepping on each other.
"""

import json
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Iterable, List, Optional

from .config import ConfigError, ShowConfig
from .filters import Action, Field, FilterRule, Operator, Predicate, default_rules
from .models import DownloadOutcome, DownloadRecord, TrackedShow


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class StoreError(Exception):
    """Raised when the database cannot be opened or a write breaks an invariant."""


class SqliteStore:
    def __init__(self, path: str | Path = ":memory:"):
        self._lock = RLock()
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open database {self._path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            if self._path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA foreign_keys=ON;")
        self._migrate()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _migrate(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shows (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  title TEXT NOT NULL UNIQUE,
                  aliases TEXT NOT NULL DEFAULT '[]',
                  season INTEGER,
                  preferred_group TEXT,
                  min_resolution INTEGER,
                  last_downloaded_episode INTEGER NOT NULL DEFAULT 0,
                  enabled INTEGER NOT NULL DEFAULT 1,
                  search_group TEXT NOT NULL DEFAULT 'subsplease',
                  download_dir TEXT
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS filter_rules (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  name TEXT NOT NULL,
                  field TEXT,
                  operator TEXT,
                  pattern TEXT NOT NULL DEFAULT '',
                  action TEXT NOT NULL,
                  priority INTEGER NOT NULL DEFAULT 0,
                  show_id INTEGER,
                  negate INTEGER NOT NULL DEFAULT 0,
                  enabled INTEGER NOT NULL DEFAULT 1,
                  disables INTEGER,
                  FOREIGN KEY(show_id) REFERENCES shows(id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS download_history (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  show_id INTEGER NOT NULL,
                  episode INTEGER NOT NULL,
                  content_id TEXT NOT NULL,
                  link TEXT NOT NULL DEFAULT '',
                  outcome TEXT NOT NULL,
                  error TEXT,
                  created_at TEXT NOT NULL,
                  FOREIGN KEY(show_id) REFERENCES shows(id) ON DELETE CASCADE
                )
                """
            )
            # At most one successful download per (show, episode).
            self._conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS download_history_success
                ON download_history(show_id, episode) WHERE outcome = 'success'
                """
            )
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS tracker_state (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )

    # Shows

    @staticmethod
    def _row_to_show(row: sqlite3.Row) -> TrackedShow:
        return TrackedShow(
            show_id=row["id"],
            title=row["title"],
            aliases=json.loads(row["aliases"] or "[]"),
            season=row["season"],
            preferred_group=row["preferred_group"],
            min_resolution=row["min_resolution"],
            last_downloaded_episode=row["last_downloaded_episode"],
            enabled=bool(row["enabled"]),
            search_group=row["search_group"],
            download_dir=row["download_dir"],
        )

    def upsert_show(self, show: ShowConfig) -> TrackedShow:
        """
        Insert a show or update its settings, keyed by title.

        The watermark of an existing show is left alone; only downloads move it.
        """

        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO shows (title, aliases, season, preferred_group, min_resolution,
                                   enabled, search_group, download_dir)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(title) DO UPDATE SET
                  aliases = excluded.aliases,
                  season = excluded.season,
                  preferred_group = excluded.preferred_group,
                  min_resolution = excluded.min_resolution,
                  enabled = excluded.enabled,
                  search_group = excluded.search_group,
                  download_dir = excluded.download_dir
                """,
                (
                    show.title,
                    json.dumps(show.aliases),
                    show.season,
                    show.preferred_group,
                    show.min_resolution,
                    int(show.enabled),
                    show.search_group,
                    show.download_dir,
                ),
            )
            row = self._conn.execute("SELECT * FROM shows WHERE title = ?", (show.title,)).fetchone()
        return self._row_to_show(row)

    def get_show(self, show_id: int) -> Optional[TrackedShow]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM shows WHERE id = ?", (show_id,)).fetchone()
        return self._row_to_show(row) if row else None

    def find_show(self, title: str) -> Optional[TrackedShow]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM shows WHERE title = ? COLLATE NOCASE", (title,)).fetchone()
        return self._row_to_show(row) if row else None

    def list_shows(self, enabled_only: bool = False) -> List[TrackedShow]:
        query = "SELECT * FROM shows"
        if enabled_only:
            query += " WHERE enabled = 1"
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY id").fetchall()
        return [self._row_to_show(row) for row in rows]

    def set_show_enabled(self, show_id: int, enabled: bool) -> None:
        with self._lock, self._conn:
            self._conn.execute("UPDATE shows SET enabled = ? WHERE id = ?", (int(enabled), show_id))

    def set_watermark(self, show_id: int, episode: int) -> None:
        """Manually move a show's watermark, e.g. when starting to track mid-season."""

        with self._lock, self._conn:
            self._conn.execute("UPDATE shows SET last_downloaded_episode = ? WHERE id = ?", (episode, show_id))

    # Filter rules

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> FilterRule:
        predicate = None
        if row["operator"]:
            predicate = Predicate(Field(row["field"]), Operator(row["operator"]), row["pattern"])
        return FilterRule(
            name=row["name"],
            action=Action(row["action"]),
            predicate=predicate,
            priority=row["priority"],
            show_id=row["show_id"],
            negate=bool(row["negate"]),
            enabled=bool(row["enabled"]),
            disables=row["disables"],
            rule_id=row["id"],
        )

    def add_rule(self, rule: FilterRule) -> FilterRule:
        with self._lock, self._conn:
            return self._insert_rule(rule)

    def _insert_rule(self, rule: FilterRule) -> FilterRule:
        predicate = rule.predicate
        cursor = self._conn.execute(
            """
            INSERT INTO filter_rules (name, field, operator, pattern, action, priority,
                                      show_id, negate, enabled, disables)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule.name,
                predicate.field.value if predicate else None,
                predicate.operator.value if predicate else None,
                predicate.pattern if predicate else "",
                rule.action.value,
                rule.priority,
                rule.show_id,
                int(rule.negate),
                int(rule.enabled),
                rule.disables,
            ),
        )
        return replace(rule, rule_id=cursor.lastrowid)

    def list_rules(self, show_id: Optional[int] = None) -> List[FilterRule]:
        """
        Global rules plus the overrides of ``show_id`` (all overrides when ``None``),
        in insertion order.
        """

        with self._lock:
            if show_id is None:
                rows = self._conn.execute("SELECT * FROM filter_rules ORDER BY id").fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM filter_rules WHERE show_id IS NULL OR show_id = ? ORDER BY id",
                    (show_id,),
                ).fetchall()
        return [self._row_to_rule(row) for row in rows]

    def delete_rule(self, rule_id: int) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM filter_rules WHERE id = ?", (rule_id,))

    def seed_default_rules(self) -> int:
        """Insert the default rule set if there are no rules at all. Returns how many were added."""

        with self._lock:
            count = self._conn.execute("SELECT COUNT(*) FROM filter_rules").fetchone()[0]
            if count:
                return 0
            rules = default_rules()
            with self._conn:
                for rule in rules:
                    self._insert_rule(rule)
        logging.info("Seeded %d default filter rules", len(rules))
        return len(rules)

    def replace_rules(self, definitions: Iterable[dict]) -> int:
        """
        Replace every rule with the given definitions (from the config file).

        A definition may carry ``"show": "<title>"`` to scope it to a show, and
        an override's ``"disables"`` names a global rule from the same list.
        Row ids are reissued on every replace, so ``disables`` goes by name only.
        Broken definitions are logged and skipped; the rest still load.

        Returns
        -------
        int
            Number of rules stored.
        """

        definitions = [definition for definition in definitions if isinstance(definition, dict)]
        global_defs = [definition for definition in definitions if not definition.get("show")]
        override_defs = [definition for definition in definitions if definition.get("show")]

        with self._lock, self._conn:
            self._conn.execute("DELETE FROM filter_rules")
            stored = 0
            ids_by_name = {}
            for definition in global_defs:
                try:
                    rule = self._insert_rule(FilterRule.from_dict(definition))
                except ConfigError as exc:
                    logging.error("Skipping filter rule: %s", exc)
                    continue
                ids_by_name[rule.name.casefold()] = rule.rule_id
                stored += 1

            for definition in override_defs:
                try:
                    show = self.find_show(definition["show"])
                    if show is None:
                        raise ConfigError(
                            f"Rule {definition.get('name')!r} targets unknown show {definition['show']!r}"
                        )
                    disables = definition.get("disables")
                    if disables is not None:
                        key = str(disables).casefold()
                        if key not in ids_by_name:
                            raise ConfigError(
                                f"Rule {definition.get('name')!r} disables {disables!r}, "
                                "which does not name a global rule in this file"
                            )
                        definition = {**definition, "disables": ids_by_name[key]}
                    self._insert_rule(FilterRule.from_dict(definition, show_id=show.show_id))
                except ConfigError as exc:
                    logging.error("Skipping filter rule: %s", exc)
                    continue
                stored += 1
        return stored

    # Download history

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> DownloadRecord:
        return DownloadRecord(
            show_id=row["show_id"],
            episode=row["episode"],
            content_id=row["content_id"],
            outcome=DownloadOutcome(row["outcome"]),
            link=row["link"],
            created_at=_parse_ts(row["created_at"]),
            error=row["error"],
            record_id=row["id"],
        )

    def _insert_record(self, record: DownloadRecord) -> DownloadRecord:
        created = record.created_at or _utc_now()
        cursor = self._conn.execute(
            """
            INSERT INTO download_history (show_id, episode, content_id, link, outcome, error, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.show_id,
                record.episode,
                record.content_id,
                record.link,
                record.outcome.value,
                record.error,
                created.isoformat(),
            ),
        )
        record.record_id = cursor.lastrowid
        record.created_at = created
        return record

    def record_failure(self, record: DownloadRecord) -> DownloadRecord:
        with self._lock, self._conn:
            return self._insert_record(record)

    def commit_success(self, record: DownloadRecord) -> int:
        """
        Store a successful download and advance the watermark in one transaction.

        Returns
        -------
        int
            The show's watermark afterwards, ``max(current, episode)``.

        Raises
        ------
        StoreError
            If a success for the same (show, episode) already exists.
        """

        with self._lock:
            try:
                with self._conn:
                    self._insert_record(record)
                    self._conn.execute(
                        "UPDATE shows SET last_downloaded_episode = MAX(last_downloaded_episode, ?) WHERE id = ?",
                        (record.episode, record.show_id),
                    )
            except sqlite3.IntegrityError as exc:
                record.record_id = None
                raise StoreError(f"Show {record.show_id} episode {record.episode} already downloaded") from exc
            row = self._conn.execute(
                "SELECT last_downloaded_episode FROM shows WHERE id = ?", (record.show_id,)
            ).fetchone()
        return row[0] if row else record.episode

    def successful_download(self, show_id: int, episode: int) -> Optional[DownloadRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM download_history WHERE show_id = ? AND episode = ? AND outcome = 'success'",
                (show_id, episode),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def content_downloaded(self, content_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM download_history WHERE content_id = ? AND outcome = 'success' LIMIT 1",
                (content_id,),
            ).fetchone()
        return row is not None

    def history(self, show_id: Optional[int] = None, limit: Optional[int] = None) -> List[DownloadRecord]:
        query = "SELECT * FROM download_history"
        params: list = []
        if show_id is not None:
            query += " WHERE show_id = ?"
            params.append(show_id)
        query += " ORDER BY id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    # Tracker state

    def mark_polled(self, when: Optional[datetime] = None) -> None:
        stamp = (when or _utc_now()).isoformat()
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO tracker_state (key, value) VALUES ('last_poll_time', ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (stamp,),
            )

    def last_poll_time(self) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM tracker_state WHERE key = 'last_poll_time'").fetchone()
        return _parse_ts(row[0]) if row else None
