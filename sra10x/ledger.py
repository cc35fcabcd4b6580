"""Persisted stage-completion markers, one empty file per (entity, stage)."""

from __future__ import annotations

import datetime as dt
import errno
import json
import os
import socket
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from .logger import get_logger


logger = get_logger("ledger")


class Stage(str, Enum):
    # values are the marker suffixes written by earlier shell runs
    ACQUIRED = "processed"
    TENX_FORMATTED = "10x_formatted"
    QUANTIFICATION_COMPLETE = "cellranger_complete"
    TEMP_CLEANED = "cellranger_cleaned"
    INPUTS_DELETED = "fastqs_deleted"


class LedgerError(RuntimeError):
    """Raised for unusable entity ids or an unusable ledger directory."""


class EntityClaimedError(LedgerError):
    """Raised when another live worker already holds the claim for an entity."""


def _check_entity_id(entity_id: str) -> str:
    if not entity_id or entity_id in {".", ".."} or "/" in entity_id or os.sep in entity_id:
        raise LedgerError(f"Invalid entity id for ledger: {entity_id!r}")
    return entity_id


def _owner_tag() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class StatusLedger:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.claims_dir = self.root / "claims"

    def ensure(self) -> "StatusLedger":
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    def marker_path(self, entity_id: str, stage: Stage) -> Path:
        return self.root / f"{_check_entity_id(entity_id)}.{Stage(stage).value}"

    def is_done(self, entity_id: str, stage: Stage) -> bool:
        return self.marker_path(entity_id, stage).exists()

    def mark_done(self, entity_id: str, stage: Stage) -> None:
        path = self.marker_path(entity_id, stage)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)

    def entities(self, stage: Stage) -> List[str]:
        if not self.root.is_dir():
            return []
        suffix = f".{Stage(stage).value}"
        return sorted(p.name[: -len(suffix)] for p in self.root.iterdir() if p.is_file() and p.name.endswith(suffix))

    def count(self, stage: Stage) -> int:
        return len(self.entities(stage))

    def count_done(self, entity_ids: Iterable[str], stage: Stage) -> int:
        return sum(1 for entity_id in entity_ids if self.is_done(entity_id, stage))

    def snapshot(self) -> Dict[str, int]:
        return {stage.name.lower(): self.count(stage) for stage in Stage}

    # -- per-entity arbitration -------------------------------------------

    def claim_path(self, entity_id: str, stage: Stage) -> Path:
        return self.claims_dir / f"{_check_entity_id(entity_id)}.{Stage(stage).value}.claim"

    def read_claim(self, entity_id: str, stage: Stage) -> Optional[Dict[str, str]]:
        path = self.claim_path(entity_id, stage)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}

    def _claim_is_stale(self, record: Optional[Dict[str, str]]) -> bool:
        if not record:
            return False
        host, _, pid_text = str(record.get("claimed_by", "")).rpartition(":")
        if host != socket.gethostname():
            return False
        try:
            pid = int(pid_text)
        except ValueError:
            return False
        return pid != os.getpid() and not _pid_alive(pid)

    def _create_claim(self, path: Path, payload: str) -> None:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)

    def acquire_claim(self, entity_id: str, stage: Stage) -> Path:
        self.claims_dir.mkdir(parents=True, exist_ok=True)
        path = self.claim_path(entity_id, stage)
        payload = json.dumps(
            {
                "claimed_by": _owner_tag(),
                "claimed_at": dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds"),
            }
        )
        try:
            self._create_claim(path, payload)
            return path
        except FileExistsError:
            pass

        record = self.read_claim(entity_id, stage)
        if not self._claim_is_stale(record):
            owner = (record or {}).get("claimed_by", "unknown owner")
            raise EntityClaimedError(
                f"{entity_id} ({Stage(stage).name}) is claimed by {owner}: {path}"
            )
        logger.warning(
            "Taking over stale claim for %s (%s) left by %s",
            entity_id,
            Stage(stage).name,
            record.get("claimed_by"),
        )
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        try:
            self._create_claim(path, payload)
        except FileExistsError as exc:
            raise EntityClaimedError(f"{entity_id} was claimed concurrently: {path}") from exc
        return path

    def release_claim(self, entity_id: str, stage: Stage) -> None:
        path = self.claim_path(entity_id, stage)
        record = self.read_claim(entity_id, stage)
        if record is None:
            return
        if record and record.get("claimed_by") != _owner_tag():
            logger.warning("Not releasing claim %s held by %s", path, record.get("claimed_by"))
            return
        try:
            path.unlink()
        except OSError as exc:
            if exc.errno != errno.ENOENT:
                raise

    @contextmanager
    def claim(self, entity_id: str, stage: Stage) -> Iterator[Path]:
        path = self.acquire_claim(entity_id, stage)
        try:
            yield path
        finally:
            self.release_claim(entity_id, stage)
