"""Kùzu Graph 存储封装：镜头序列与连续性分组的持久化。"""

from __future__ import annotations

import functools
import json
import logging
import threading
from pathlib import Path
from typing import Any

import kuzu

from shotlink.continuity.migration import DEFAULT_GROUP_STATUS
from shotlink.models import ContinuityGroup, ContinuityPayload, Shot

logger = logging.getLogger(__name__)


def _serialized(method):
    """同一个 Connection 不跨线程并发使用（请求线程与同步定时器共用存储）。"""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class GraphStorage:
    """封装 Kùzu 的基本写入与查询；同时实现 ShotStore 接口。"""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = kuzu.Database(str(self.db_path))
        self.conn = kuzu.Connection(self.db)
        self._lock = threading.RLock()
        self._ensure_schema()

    def close(self) -> None:
        self.conn.close()
        self.db.close()

    def _table_columns(self, table: str) -> set[str]:
        result = self.conn.execute(f"CALL table_info('{table}') RETURN *;")
        return {row[1] for row in result}

    def _ensure_columns(self, table: str, columns: dict[str, str]) -> None:
        existing = self._table_columns(table)
        for name, type_ in columns.items():
            if name in existing:
                continue
            self.conn.execute(f"ALTER TABLE {table} ADD {name} {type_};")

    def _ensure_schema(self) -> None:
        self.conn.execute(
            """
            CREATE NODE TABLE IF NOT EXISTS Shot(
                id STRING,
                scene_id STRING,
                position INT64,
                PRIMARY KEY (id)
            );
            """
        )
        self.conn.execute(
            """
            CREATE NODE TABLE IF NOT EXISTS ContinuityGroup(
                id STRING,
                video_id STRING,
                scene_id STRING,
                group_number INT64,
                shot_ids_json STRING,
                status STRING,
                transition_type STRING,
                description STRING,
                edited_by STRING,
                edited_at STRING,
                approved_at STRING,
                created_at STRING,
                sort_index INT64,
                PRIMARY KEY (id)
            );
            """
        )
        self.conn.execute(
            """
            CREATE NODE TABLE IF NOT EXISTS ContinuityState(
                id STRING,
                locked BOOLEAN,
                locked_scene_ids_json STRING,
                PRIMARY KEY (id)
            );
            """
        )
        self._ensure_columns(
            "ContinuityGroup",
            {
                "status": "STRING",
                "edited_by": "STRING",
                "edited_at": "STRING",
                "approved_at": "STRING",
                "sort_index": "INT64",
            },
        )

    @_serialized
    def run_backfill_migrations(self) -> None:
        """显式迁移：早于 status 字段的分组一律视为 approved。"""
        self.conn.execute(
            (
                "MATCH (g:ContinuityGroup) "
                "WHERE g.status IS NULL OR g.status = '' "
                f"SET g.status = '{DEFAULT_GROUP_STATUS.value}';"
            )
        )
        self.conn.execute(
            "MATCH (g:ContinuityGroup) WHERE g.sort_index IS NULL SET g.sort_index = 0;"
        )
        logger.info("continuity backfill migrations applied: db_path=%s", self.db_path)

    @staticmethod
    def _esc(value: str) -> str:
        return value.replace("\\", "\\\\").replace("'", "\\'")

    def _sql_str(self, value: Any) -> str:
        if value is None:
            return "NULL"
        return f"'{self._esc(str(value))}'"

    @staticmethod
    def _sql_bool(value: bool | None) -> str:
        if value is None:
            return "NULL"
        return "true" if bool(value) else "false"

    def _in_transaction(self, statements: list[str]) -> None:
        self.conn.execute("BEGIN TRANSACTION;")
        try:
            for statement in statements:
                self.conn.execute(statement)
        except RuntimeError:
            self.conn.execute("ROLLBACK;")
            raise
        self.conn.execute("COMMIT;")

    # ------------------------------------------------------------------ shots

    @_serialized
    def replace_scene_shots(self, *, scene_id: str, shot_ids: list[str]) -> list[Shot]:
        if not scene_id.strip():
            raise ValueError("scene_id must not be blank")
        if len(set(shot_ids)) != len(shot_ids):
            raise ValueError(f"duplicate shot ids for scene: scene_id={scene_id}")
        statements = [
            f"MATCH (s:Shot) WHERE s.scene_id = {self._sql_str(scene_id)} DELETE s;"
        ]
        for position, shot_id in enumerate(shot_ids):
            statements.append(
                (
                    "MERGE (s:Shot {"
                    f"id: {self._sql_str(shot_id)}"
                    "}) SET "
                    f"s.scene_id = {self._sql_str(scene_id)}, "
                    f"s.position = {position};"
                )
            )
        self._in_transaction(statements)
        return self.get_shots(scene_id)

    @_serialized
    def get_shots(self, scene_id: str) -> list[Shot]:
        result = self.conn.execute(
            (
                "MATCH (s:Shot) "
                f"WHERE s.scene_id = {self._sql_str(scene_id)} "
                "RETURN s.id, s.scene_id, s.position ORDER BY s.position;"
            )
        )
        return [Shot(id=row[0], scene_id=row[1], position=row[2]) for row in result]

    @_serialized
    def delete_shot(self, *, scene_id: str, shot_id: str) -> None:
        remaining = [shot.id for shot in self.get_shots(scene_id)]
        if shot_id not in remaining:
            raise KeyError(f"Shot not found: scene_id={scene_id} shot_id={shot_id}")
        remaining.remove(shot_id)
        statements = [
            (
                "MATCH (s:Shot) "
                f"WHERE s.id = {self._sql_str(shot_id)} "
                f"AND s.scene_id = {self._sql_str(scene_id)} "
                "DELETE s;"
            )
        ]
        for position, remaining_id in enumerate(remaining):
            statements.append(
                (
                    "MATCH (s:Shot) "
                    f"WHERE s.id = {self._sql_str(remaining_id)} "
                    f"SET s.position = {position};"
                )
            )
        self._in_transaction(statements)

    # ------------------------------------------------------------------ continuity

    @_serialized
    def save_continuity(self, *, video_id: str, payload: ContinuityPayload) -> None:
        """覆盖写入整个视频的连续性状态（幂等，不做增量合并）。"""
        statements = [
            f"MATCH (g:ContinuityGroup) WHERE g.video_id = {self._sql_str(video_id)} DELETE g;"
        ]
        sort_index = 0
        for scene_id, groups in payload.continuity_groups.items():
            for group in groups:
                statements.append(self._create_group_statement(video_id, scene_id, group, sort_index))
                sort_index += 1
        statements.append(
            (
                "MERGE (c:ContinuityState {"
                f"id: {self._sql_str(video_id)}"
                "}) SET "
                f"c.locked = {self._sql_bool(payload.locked)}, "
                f"c.locked_scene_ids_json = {self._sql_str(json.dumps(payload.locked_scene_ids))};"
            )
        )
        self._in_transaction(statements)
        logger.debug("continuity saved: video_id=%s groups=%d", video_id, sort_index)

    def _create_group_statement(
        self, video_id: str, scene_id: str, group: ContinuityGroup, sort_index: int
    ) -> str:
        data = group.model_dump(mode="json")
        return (
            "CREATE (:ContinuityGroup {"
            f"id: {self._sql_str(data['id'])}, "
            f"video_id: {self._sql_str(video_id)}, "
            f"scene_id: {self._sql_str(scene_id)}, "
            f"group_number: {int(data['group_number'])}, "
            f"shot_ids_json: {self._sql_str(json.dumps(data['shot_ids']))}, "
            f"status: {self._sql_str(data['status'])}, "
            f"transition_type: {self._sql_str(data['transition_type'])}, "
            f"description: {self._sql_str(data['description'])}, "
            f"edited_by: {self._sql_str(data['edited_by'])}, "
            f"edited_at: {self._sql_str(data['edited_at'])}, "
            f"approved_at: {self._sql_str(data['approved_at'])}, "
            f"created_at: {self._sql_str(data['created_at'])}, "
            f"sort_index: {sort_index}"
            "});"
        )

    @_serialized
    def load_continuity(self, *, video_id: str) -> dict[str, Any] | None:
        """返回与 PATCH 载荷同形的原始 dict；未保存过返回 None。

        status 原样返回（可能为空），由加载方统一迁移。
        """
        state_rows = self.conn.execute(
            (
                "MATCH (c:ContinuityState) "
                f"WHERE c.id = {self._sql_str(video_id)} "
                "RETURN c.locked, c.locked_scene_ids_json LIMIT 1;"
            )
        )
        state = next(iter(state_rows), None)
        group_rows = self.conn.execute(
            (
                "MATCH (g:ContinuityGroup) "
                f"WHERE g.video_id = {self._sql_str(video_id)} "
                "RETURN g.id, g.scene_id, g.group_number, g.shot_ids_json, g.status, "
                "g.transition_type, g.description, g.edited_by, g.edited_at, "
                "g.approved_at, g.created_at "
                "ORDER BY g.sort_index;"
            )
        )
        continuity_groups: dict[str, list[dict[str, Any]]] = {}
        for row in group_rows:
            continuity_groups.setdefault(row[1], []).append(
                {
                    "id": row[0],
                    "sceneId": row[1],
                    "groupNumber": row[2] or 0,
                    "shotIds": json.loads(row[3] or "[]"),
                    "status": row[4],
                    "transitionType": row[5],
                    "description": row[6],
                    "editedBy": row[7],
                    "editedAt": row[8],
                    "approvedAt": row[9],
                    "createdAt": row[10],
                }
            )
        if state is None and not continuity_groups:
            return None
        locked = bool(state[0]) if state else False
        locked_scene_ids = json.loads(state[1] or "[]") if state else []
        return {
            "continuityGroups": continuity_groups,
            "locked": locked,
            "lockedSceneIds": locked_scene_ids,
        }

    @_serialized
    def list_continuity_videos(self) -> list[str]:
        """包含只有分组、没有状态行的旧数据。"""
        video_ids = {
            row[0] for row in self.conn.execute("MATCH (c:ContinuityState) RETURN c.id;")
        }
        video_ids.update(
            row[0]
            for row in self.conn.execute(
                "MATCH (g:ContinuityGroup) RETURN DISTINCT g.video_id;"
            )
            if row[0]
        )
        return sorted(video_ids)
