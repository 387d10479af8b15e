#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import datetime as dt
import sqlite3
import time
import uuid
from contextlib import contextmanager
from typing import Iterable, List, Optional, Tuple

from errors import DuplicateResourceError, InvalidOperationError, ResourceNotFoundError, StoreError
from models import DMS, DMSStatus, KeyMetadata, LEGACY_PENDING_SPELLING
from utils_crt import normalize_serial


_PENDING_VALUES = (DMSStatus.PENDING_APPROVAL.value, LEGACY_PENDING_SPELLING)

_SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS dms_store (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL UNIQUE,
  serialNumber TEXT NOT NULL DEFAULT '',
  keyType TEXT NOT NULL,
  keyBits INTEGER NOT NULL,
  csrBase64 TEXT NOT NULL,
  status TEXT NOT NULL,
  creation_ts TEXT NOT NULL,
  modification_ts TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_dms_store_serial
  ON dms_store(serialNumber) WHERE serialNumber <> '';

CREATE TABLE IF NOT EXISTS authorized_cas (
  dmsid TEXT NOT NULL,
  caname TEXT NOT NULL,
  PRIMARY KEY (dmsid, caname)
);
"""


def _now_iso():
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _path_from_url(url: str) -> str:
    if not url or not url.startswith("sqlite:///"):
        raise ValueError(f"Only sqlite:/// database URLs are supported (got {url!r})")
    path = url[len("sqlite:///"):]
    if not path or path == ":memory:":
        raise ValueError("An on-disk sqlite database is required")
    return path


class DMSStore:
    """DMS table plus the authorized-CA relation.

    Each public call opens its own connection and runs in one transaction;
    the approve and delete paths span both tables inside that transaction.
    """

    def __init__(self, database_url: str, busy_timeout: float = 5.0):
        self.path = _path_from_url(database_url)
        self.busy_timeout = busy_timeout

    # ---------------- connection handling ----------------

    @contextmanager
    def _tx(self):
        try:
            cx = sqlite3.connect(self.path, timeout=self.busy_timeout)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open database: {e}") from e
        cx.row_factory = sqlite3.Row
        try:
            yield cx
            cx.commit()
        except sqlite3.IntegrityError as e:
            cx.rollback()
            raise DuplicateResourceError(f"duplicate resource: {e}") from e
        except sqlite3.Error as e:
            cx.rollback()
            raise StoreError(str(e)) from e
        except BaseException:
            cx.rollback()
            raise
        finally:
            cx.close()

    def init_schema(self) -> None:
        with self._tx() as cx:
            cx.executescript(_SCHEMA)

    def ping(self) -> None:
        with self._tx() as cx:
            cx.execute("SELECT 1").fetchone()

    def wait_until_ready(self, attempts: int = 12, interval: float = 5.0, logger=None, sleep=time.sleep) -> bool:
        """Probe until the database answers, then create the schema."""
        for attempt in range(1, attempts + 1):
            try:
                self.ping()
                self.init_schema()
                return True
            except StoreError as e:
                if logger is not None:
                    logger.warning(
                        "store not ready",
                        extra={"fields": {"attempt": attempt, "attempts": attempts, "err": str(e)}},
                    )
                if attempt < attempts:
                    sleep(interval)
        return False

    # ---------------- row mapping ----------------

    @staticmethod
    def _row_to_dms(row: sqlite3.Row, cas: Optional[List[str]] = None) -> DMS:
        return DMS(
            id=row["id"],
            name=row["name"],
            status=DMSStatus.parse(row["status"]),
            serial_number=row["serialNumber"] or "",
            csr_base64=row["csrBase64"],
            key_metadata=KeyMetadata(key_type=row["keyType"], key_bits=int(row["keyBits"])),
            authorized_cas=list(cas or []),
            creation_ts=row["creation_ts"],
            modification_ts=row["modification_ts"],
        )

    @staticmethod
    def _cas_for(cx, dms_id: str) -> List[str]:
        rows = cx.execute(
            "SELECT caname FROM authorized_cas WHERE dmsid = ? ORDER BY caname", (dms_id,)
        ).fetchall()
        return [r["caname"] for r in rows]

    def _select_one(self, cx, where: str, params: tuple) -> DMS:
        row = cx.execute(f"SELECT * FROM dms_store WHERE {where}", params).fetchone()
        if row is None:
            raise ResourceNotFoundError("DMS not found")
        return self._row_to_dms(row, self._cas_for(cx, row["id"]))

    # ---------------- dms_store ----------------

    def insert(self, dms: DMS) -> str:
        dms_id = dms.id or str(uuid.uuid4())
        now = _now_iso()
        with self._tx() as cx:
            cx.execute(
                "INSERT INTO dms_store(id, name, serialNumber, keyType, keyBits, csrBase64, status, creation_ts, modification_ts) "
                "VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    dms_id,
                    dms.name,
                    dms.serial_number or "",
                    dms.key_metadata.key_type,
                    dms.key_metadata.key_bits,
                    dms.csr_base64,
                    dms.status.value,
                    now,
                    now,
                ),
            )
        return dms_id

    def select_all(self) -> List[DMS]:
        with self._tx() as cx:
            rows = cx.execute("SELECT * FROM dms_store ORDER BY creation_ts, name").fetchall()
            return [self._row_to_dms(r, self._cas_for(cx, r["id"])) for r in rows]

    def select_by_id(self, dms_id: str) -> DMS:
        with self._tx() as cx:
            return self._select_one(cx, "id = ?", (dms_id,))

    def select_by_serial_number(self, serial) -> DMS:
        with self._tx() as cx:
            return self._select_one(cx, "serialNumber = ?", (normalize_serial(serial),))

    def update_by_id(self, dms_id: str, status: DMSStatus, serial: str,
                     expected_status: Optional[DMSStatus] = None) -> DMS:
        """Write status and serial; with expected_status the write is conditional.

        Updating zero rows (unknown id, or a concurrent writer got there
        first) is an InvalidOperationError.
        """
        sql = "UPDATE dms_store SET status = ?, serialNumber = ?, modification_ts = ? WHERE id = ?"
        params: Tuple = (status.value, serial or "", _now_iso(), dms_id)
        if expected_status is not None:
            sql, params = self._with_status_guard(sql, params, expected_status)
        with self._tx() as cx:
            cur = cx.execute(sql, params)
            if cur.rowcount != 1:
                raise InvalidOperationError("no rows updated")
            return self._select_one(cx, "id = ?", (dms_id,))

    @staticmethod
    def _with_status_guard(sql: str, params: Tuple, expected: DMSStatus):
        if expected == DMSStatus.PENDING_APPROVAL:
            return sql + " AND status IN (?, ?)", params + _PENDING_VALUES
        return sql + " AND status = ?", params + (expected.value,)

    def approve(self, dms_id: str, serial: str, cas: Iterable[str]) -> DMS:
        """PENDING -> APPROVED, serial and authorized CAs in one transaction."""
        cas = list(dict.fromkeys(cas))
        sql, params = self._with_status_guard(
            "UPDATE dms_store SET status = ?, serialNumber = ?, modification_ts = ? WHERE id = ?",
            (DMSStatus.APPROVED.value, serial, _now_iso(), dms_id),
            DMSStatus.PENDING_APPROVAL,
        )
        with self._tx() as cx:
            cur = cx.execute(sql, params)
            if cur.rowcount != 1:
                raise InvalidOperationError("no rows updated")
            cx.executemany(
                "INSERT INTO authorized_cas(dmsid, caname) VALUES (?, ?)",
                [(dms_id, ca) for ca in cas],
            )
            return self._select_one(cx, "id = ?", (dms_id,))

    def delete(self, dms_id: str, allowed_statuses: Optional[Iterable[DMSStatus]] = None) -> None:
        """Remove the DMS row and its authorized-CA rows atomically."""
        sql = "DELETE FROM dms_store WHERE id = ?"
        params: Tuple = (dms_id,)
        if allowed_statuses is not None:
            values = [s.value for s in allowed_statuses]
            sql += " AND status IN (%s)" % ",".join("?" * len(values))
            params += tuple(values)
        with self._tx() as cx:
            cur = cx.execute(sql, params)
            if cur.rowcount != 1:
                exists = cx.execute("SELECT 1 FROM dms_store WHERE id = ?", (dms_id,)).fetchone()
                if exists is None:
                    raise ResourceNotFoundError("DMS not found")
                raise InvalidOperationError("no rows deleted")
            cx.execute("DELETE FROM authorized_cas WHERE dmsid = ?", (dms_id,))

    # ---------------- authorized_cas ----------------

    def insert_authorized_cas(self, dms_id: str, cas: Iterable[str]) -> None:
        with self._tx() as cx:
            cx.executemany(
                "INSERT INTO authorized_cas(dmsid, caname) VALUES (?, ?)",
                [(dms_id, ca) for ca in dict.fromkeys(cas)],
            )

    def delete_authorized_cas(self, dms_id: str) -> None:
        with self._tx() as cx:
            cx.execute("DELETE FROM authorized_cas WHERE dmsid = ?", (dms_id,))

    def select_authorized_cas_by_dms_id(self, dms_id: str) -> List[str]:
        with self._tx() as cx:
            return self._cas_for(cx, dms_id)

    def select_all_authorized_cas(self) -> List[Tuple[str, str]]:
        with self._tx() as cx:
            rows = cx.execute("SELECT dmsid, caname FROM authorized_cas ORDER BY dmsid, caname").fetchall()
            return [(r["dmsid"], r["caname"]) for r in rows]
