"""连续性存储的显式迁移与回滚命令行。"""

from __future__ import annotations

import argparse
import json
import logging
import shutil
from pathlib import Path

from shotlink.continuity.serialization import dump_payload, load_payload
from shotlink.storage.graph import GraphStorage

logger = logging.getLogger(__name__)


def _copy_db(src: Path, dst: Path) -> None:
    if not src.exists():
        raise FileNotFoundError(f"db path not found: {src}")
    if dst.exists():
        raise FileExistsError(f"backup path already exists: {dst}")
    if src.is_dir():
        shutil.copytree(src, dst)
    else:
        shutil.copy2(src, dst)


def _restore_db(src: Path, dst: Path) -> None:
    if not src.exists():
        raise FileNotFoundError(f"backup path not found: {src}")
    if dst.exists():
        if dst.is_dir():
            shutil.rmtree(dst)
        else:
            dst.unlink()
    if src.is_dir():
        shutil.copytree(src, dst)
    else:
        shutil.copy2(src, dst)


def run_backfill_migrations(db_path: Path) -> list[str]:
    """补全旧分组的 status，并按新模型重写每个视频的载荷；返回迁移过的视频。"""
    storage = GraphStorage(db_path=db_path)
    try:
        storage.run_backfill_migrations()
        migrated: list[str] = []
        for video_id in storage.list_continuity_videos():
            raw = storage.load_continuity(video_id=video_id)
            if raw is None:
                continue
            storage.save_continuity(video_id=video_id, payload=load_payload(raw))
            migrated.append(video_id)
        logger.info("continuity payloads rewritten: count=%d", len(migrated))
        return migrated
    finally:
        storage.close()


def export_continuity(db_path: Path, video_id: str) -> dict:
    storage = GraphStorage(db_path=db_path)
    try:
        raw = storage.load_continuity(video_id=video_id)
    finally:
        storage.close()
    if raw is None:
        raise KeyError(f"Continuity not found: video_id={video_id}")
    return dump_payload(load_payload(raw))


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run explicit continuity migrations, export, or rollback from backup."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate = subparsers.add_parser("migrate", help="Backfill group status and rewrite payloads.")
    migrate.add_argument("--db-path", required=True, help="Path to the Kuzu DB.")
    migrate.add_argument(
        "--backup-path",
        required=False,
        help="Optional backup path before migration.",
    )

    export = subparsers.add_parser("export", help="Print one video's continuity payload.")
    export.add_argument("--db-path", required=True, help="Path to the Kuzu DB.")
    export.add_argument("--video-id", required=True, help="Video whose continuity to export.")

    rollback = subparsers.add_parser("rollback", help="Restore DB from backup.")
    rollback.add_argument("--db-path", required=True, help="Path to the Kuzu DB.")
    rollback.add_argument("--backup-path", required=True, help="Path to the backup.")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    db_path = Path(args.db_path)

    if args.command == "migrate":
        backup_path = Path(args.backup_path) if args.backup_path else None
        if backup_path:
            _copy_db(db_path, backup_path)
        run_backfill_migrations(db_path)
        return

    if args.command == "export":
        print(json.dumps(export_continuity(db_path, args.video_id), ensure_ascii=False, indent=2))
        return

    if args.command == "rollback":
        backup_path = Path(args.backup_path)
        _restore_db(backup_path, db_path)
        return

    raise RuntimeError(f"Unsupported command: {args.command}")


if __name__ == "__main__":
    main()
