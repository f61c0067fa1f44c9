#!/usr/bin/env python3
"""
Tool Registry Persistence
SQLite materialization of the published registry so a restart keeps usage
history and the record keys used to recognise re-delivered usage.

Tables:
- tools: one row per matrix code, ordinal keeps load order
- usage_events: append-only usage history per tool
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, List, Union

from path_utils import get_data_dir
from tool_registry import Tool, ToolRegistry, UsageEvent

DEFAULT_DB_PATH = get_data_dir() / "tool_manager.db"


class RegistryStore:
    """Saves and restores ToolRegistry snapshots"""

    def __init__(self, db_path: Union[str, Path] = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    def get_db_connection(self):
        """Get database connection with row factory"""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self):
        """Initialize registry tables (safe to call repeatedly)"""
        conn = self.get_db_connection()
        try:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS tools (
                    matrix_code TEXT PRIMARY KEY,
                    ordinal INTEGER NOT NULL,
                    family_code TEXT,
                    category TEXT,
                    diameter REAL DEFAULT 0,
                    tool_life REAL DEFAULT 0,
                    code_prefix TEXT,
                    variant TEXT,
                    tool_state TEXT DEFAULT 'FREE',  -- 'FREE', 'IN_USE'
                    usage_minutes REAL DEFAULT 0,
                    project_list TEXT,               -- JSON array
                    in_pool REAL DEFAULT 0,
                    warning_threshold INTEGER DEFAULT 3,
                    image_url TEXT,
                    first_seen TEXT,
                    last_seen TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS usage_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    matrix_code TEXT NOT NULL,
                    record_key TEXT NOT NULL,
                    tool_id TEXT,
                    family_code TEXT,
                    minutes REAL,
                    project TEXT,
                    job_id TEXT,
                    observed_at TEXT,
                    UNIQUE (matrix_code, record_key)
                );

                CREATE INDEX IF NOT EXISTS idx_usage_events_tool ON usage_events(matrix_code);
            ''')
            conn.commit()
        finally:
            conn.close()

    def save_registry(self, registry: ToolRegistry) -> int:
        """Write the registry's current snapshot in one transaction"""
        tools = registry.export_state()
        conn = self.get_db_connection()
        try:
            with conn:
                conn.execute('DELETE FROM tools')
                for ordinal, tool in enumerate(tools):
                    conn.execute('''
                        INSERT INTO tools (
                            matrix_code, ordinal, family_code, category, diameter, tool_life,
                            code_prefix, variant, tool_state, usage_minutes, project_list,
                            in_pool, warning_threshold, image_url, first_seen, last_seen
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''', (
                        tool.matrix_code, ordinal, tool.family_code, tool.category,
                        tool.diameter, tool.tool_life, tool.code_prefix, tool.variant,
                        tool.tool_state, tool.usage_minutes, json.dumps(sorted(tool.project_list)),
                        tool.in_pool, tool.warning_threshold, tool.image_url,
                        tool.first_seen, tool.last_seen,
                    ))
                    # History is append-only: existing events are never rewritten.
                    conn.executemany('''
                        INSERT OR IGNORE INTO usage_events (
                            matrix_code, record_key, tool_id, family_code, minutes,
                            project, job_id, observed_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ''', [
                        (tool.matrix_code, e.record_key, e.tool_id, e.family_code, e.minutes,
                         e.project, e.job_id, e.observed_at)
                        for e in tool.usage_history
                    ])
        finally:
            conn.close()
        logging.debug(f"Saved {len(tools)} tool(s) to {self.db_path}")
        return len(tools)

    def load_tools(self) -> List[Tool]:
        conn = self.get_db_connection()
        try:
            history: Dict[str, List[UsageEvent]] = {}
            for row in conn.execute('SELECT * FROM usage_events ORDER BY id ASC'):
                history.setdefault(row['matrix_code'], []).append(UsageEvent(
                    record_key=row['record_key'],
                    tool_id=row['tool_id'] or '',
                    family_code=row['family_code'] or '',
                    minutes=row['minutes'] or 0.0,
                    project=row['project'] or '',
                    job_id=row['job_id'] or '',
                    observed_at=row['observed_at'] or '',
                ))

            tools = []
            for row in conn.execute('SELECT * FROM tools ORDER BY ordinal ASC'):
                try:
                    projects = set(json.loads(row['project_list'] or '[]'))
                except ValueError:
                    projects = set()
                tool = Tool(
                    matrix_code=row['matrix_code'],
                    tool_state=row['tool_state'] or 'FREE',
                    usage_history=history.get(row['matrix_code'], []),
                    usage_minutes=row['usage_minutes'] or 0.0,
                    project_list=projects,
                    first_seen=row['first_seen'] or '',
                    last_seen=row['last_seen'] or '',
                )
                in_pool = row['in_pool'] or 0
                tool.set_in_pool(int(in_pool) if float(in_pool).is_integer() else in_pool)
                tools.append(tool)
            return tools
        finally:
            conn.close()

    def load_registry(self, registry: ToolRegistry) -> int:
        """Restore a persisted snapshot into the registry. Returns tools restored."""
        tools = self.load_tools()
        if tools:
            registry.restore_state(tools)
            logging.info(f"💾 Restored {len(tools)} tool(s) from {self.db_path}")
        return len(tools)
