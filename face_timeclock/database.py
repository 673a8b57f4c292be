import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence

import numpy as np

from .exceptions import DatabaseError
from .models import SLOT_ORDER, AttendanceRecord, Direction, Enrollee, Shift, Slot, SlotEntry


@dataclass
class EnrolleeProfile:
    enrollee_id: str
    name: str
    slots: List[str]
    created_at: str
    updated_at: str


class AttendanceDatabase:
    """SQLite store for enrollees, their descriptor slots and attendance rows."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS enrollees (
                        enrollee_id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS enrollee_slots (
                        enrollee_id TEXT NOT NULL,
                        slot TEXT NOT NULL,
                        descriptor BLOB,
                        descriptor_dim INTEGER,
                        reference_image TEXT,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (enrollee_id, slot),
                        FOREIGN KEY (enrollee_id) REFERENCES enrollees(enrollee_id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS attendance (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        enrollee_id TEXT NOT NULL,
                        shift TEXT NOT NULL CHECK (shift IN ('Morning', 'Afternoon')),
                        direction TEXT NOT NULL CHECK (direction IN ('In', 'Out')),
                        timestamp TEXT NOT NULL,
                        attendance_date TEXT NOT NULL,
                        verified INTEGER NOT NULL DEFAULT 1,
                        reference_image TEXT,
                        FOREIGN KEY (enrollee_id) REFERENCES enrollees(enrollee_id)
                    );

                    CREATE INDEX IF NOT EXISTS idx_attendance_enrollee_date
                        ON attendance (enrollee_id, attendance_date);
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}") from exc

    # Enrollees

    def upsert_enrollee(self, enrollee_id: str, name: str) -> None:
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO enrollees (enrollee_id, name, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(enrollee_id) DO UPDATE SET
                        name = excluded.name,
                        updated_at = excluded.updated_at
                    """,
                    (enrollee_id, name, now, now),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save enrollee {enrollee_id}: {exc}") from exc

    def save_slot(
        self,
        enrollee_id: str,
        slot: Slot,
        descriptor: Optional[np.ndarray],
        reference_image: Optional[str] = None,
    ) -> None:
        now = datetime.now().isoformat(timespec="seconds")
        blob = None
        dim = None
        if descriptor is not None:
            vector = np.asarray(descriptor, dtype=np.float32)
            if vector.ndim != 1:
                raise DatabaseError("Descriptor must be a 1D vector.")
            blob = vector.tobytes()
            dim = int(vector.size)

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO enrollee_slots (
                        enrollee_id, slot, descriptor, descriptor_dim, reference_image, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(enrollee_id, slot) DO UPDATE SET
                        descriptor = excluded.descriptor,
                        descriptor_dim = excluded.descriptor_dim,
                        reference_image = excluded.reference_image,
                        updated_at = excluded.updated_at
                    """,
                    (enrollee_id, Slot(slot).value, blob, dim, reference_image, now),
                )
                conn.execute(
                    "UPDATE enrollees SET updated_at = ? WHERE enrollee_id = ?",
                    (now, enrollee_id),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save {slot} slot for {enrollee_id}: {exc}") from exc

    def find_enrollee(self, enrollee_id: str) -> Optional[Enrollee]:
        enrollees = self._load_enrollees("WHERE e.enrollee_id = ?", (enrollee_id,))
        return enrollees[0] if enrollees else None

    def list_enrollees_with_descriptors(self) -> List[Enrollee]:
        return [
            enrollee
            for enrollee in self._load_enrollees()
            if any(not entry.is_empty for entry in enrollee.slots.values())
        ]

    def list_enrollee_profiles(self) -> List[EnrolleeProfile]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT e.enrollee_id, e.name, e.created_at, e.updated_at,
                           GROUP_CONCAT(s.slot) AS slots
                    FROM enrollees e
                    LEFT JOIN enrollee_slots s ON s.enrollee_id = e.enrollee_id
                    GROUP BY e.enrollee_id
                    ORDER BY e.name ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load enrollee profiles: {exc}") from exc

        return [
            EnrolleeProfile(
                enrollee_id=row["enrollee_id"],
                name=row["name"],
                slots=sorted(row["slots"].split(",")) if row["slots"] else [],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def delete_enrollee(self, enrollee_id: str) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM attendance WHERE enrollee_id = ?", (enrollee_id,))
                conn.execute("DELETE FROM enrollee_slots WHERE enrollee_id = ?", (enrollee_id,))
                cursor = conn.execute("DELETE FROM enrollees WHERE enrollee_id = ?", (enrollee_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete enrollee {enrollee_id}: {exc}") from exc

    def _load_enrollees(self, where: str = "", params: Sequence[Any] = ()) -> List[Enrollee]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT e.enrollee_id, e.name, s.slot, s.descriptor, s.descriptor_dim, s.reference_image
                    FROM enrollees e
                    LEFT JOIN enrollee_slots s ON s.enrollee_id = e.enrollee_id
                    {where}
                    ORDER BY e.created_at ASC, e.enrollee_id ASC
                    """,
                    tuple(params),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load enrollees: {exc}") from exc

        enrollees: dict[str, Enrollee] = {}
        for row in rows:
            enrollee = enrollees.setdefault(row["enrollee_id"], Enrollee(row["enrollee_id"], row["name"]))
            if row["slot"] is None or row["slot"] not in {slot.value for slot in SLOT_ORDER}:
                continue
            vector = None
            if row["descriptor"] is not None:
                vector = np.frombuffer(row["descriptor"], dtype=np.float32, count=row["descriptor_dim"]).copy()
            enrollee.slots[Slot(row["slot"])] = SlotEntry(vector=vector, reference_image=row["reference_image"])
        return list(enrollees.values())

    # Attendance

    def commit_attendance(self, record: AttendanceRecord) -> int:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO attendance (
                        enrollee_id, shift, direction, timestamp, attendance_date, verified, reference_image
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.enrollee_id,
                        Shift(record.shift).value,
                        Direction(record.direction).value,
                        record.timestamp.isoformat(timespec="seconds"),
                        record.timestamp.date().isoformat(),
                        int(record.verified),
                        record.reference_image,
                    ),
                )
                return int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to record attendance for {record.enrollee_id}: {exc}") from exc

    def find_today_records(self, enrollee_id: str, today: Optional[date] = None) -> List[AttendanceRecord]:
        day = (today or datetime.now().date()).isoformat()
        return self._query_attendance(
            "WHERE enrollee_id = ? AND attendance_date = ?",
            [enrollee_id, day],
            order="ASC",
        )

    def today_attendance(self, today: Optional[date] = None) -> List[AttendanceRecord]:
        day = (today or datetime.now().date()).isoformat()
        return self._query_attendance("WHERE attendance_date = ?", [day])

    def search_attendance(
        self,
        enrollee_id: str = "",
        date_from: str = "",
        date_to: str = "",
        shift: Optional[Shift] = None,
        direction: Optional[Direction] = None,
        verified: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AttendanceRecord]:
        clauses: List[str] = []
        params: List[Any] = []

        if enrollee_id.strip():
            clauses.append("enrollee_id = ?")
            params.append(enrollee_id.strip())
        if date_from.strip():
            clauses.append("attendance_date >= ?")
            params.append(date_from.strip())
        if date_to.strip():
            clauses.append("attendance_date <= ?")
            params.append(date_to.strip())
        if shift is not None:
            clauses.append("shift = ?")
            params.append(Shift(shift).value)
        if direction is not None:
            clauses.append("direction = ?")
            params.append(Direction(direction).value)
        if verified is not None:
            clauses.append("verified = ?")
            params.append(int(verified))

        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        safe_limit = max(1, min(10_000, int(limit)))
        safe_offset = max(0, int(offset))
        return self._query_attendance(where, params, limit=safe_limit, offset=safe_offset)

    def attendance_image(self, record_id: int) -> Optional[str]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT reference_image FROM attendance WHERE id = ?",
                    (int(record_id),),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance image {record_id}: {exc}") from exc
        if row is None:
            return None
        return row["reference_image"]

    def attendance_stats(self, date_from: str = "", date_to: str = "") -> dict[str, Any]:
        clauses: List[str] = []
        params: List[Any] = []
        if date_from.strip():
            clauses.append("attendance_date >= ?")
            params.append(date_from.strip())
        if date_to.strip():
            clauses.append("attendance_date <= ?")
            params.append(date_to.strip())
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        try:
            with self._connect() as conn:
                total = conn.execute(f"SELECT COUNT(*) AS c FROM attendance {where}", params).fetchone()["c"]
                unique = conn.execute(
                    f"SELECT COUNT(DISTINCT enrollee_id) AS c FROM attendance {where}", params
                ).fetchone()["c"]
                by_shift = conn.execute(
                    f"SELECT shift AS k, COUNT(*) AS c FROM attendance {where} GROUP BY shift", params
                ).fetchall()
                by_direction = conn.execute(
                    f"SELECT direction AS k, COUNT(*) AS c FROM attendance {where} GROUP BY direction", params
                ).fetchall()
                by_verified = conn.execute(
                    f"SELECT verified AS k, COUNT(*) AS c FROM attendance {where} GROUP BY verified", params
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance stats: {exc}") from exc

        return {
            "totalRecords": int(total),
            "uniqueEnrollees": int(unique),
            "byShift": {row["k"]: int(row["c"]) for row in by_shift},
            "byDirection": {row["k"]: int(row["c"]) for row in by_direction},
            "byVerified": {("verified" if row["k"] else "unverified"): int(row["c"]) for row in by_verified},
        }

    def _query_attendance(
        self,
        where: str,
        params: List[Any],
        order: str = "DESC",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[AttendanceRecord]:
        sql = f"""
            SELECT id, enrollee_id, shift, direction, timestamp, verified, reference_image
            FROM attendance
            {where}
            ORDER BY timestamp {order}, id {order}
        """
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = [*params, limit, offset]

        try:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to query attendance: {exc}") from exc

        return [
            AttendanceRecord(
                id=row["id"],
                enrollee_id=row["enrollee_id"],
                shift=Shift(row["shift"]),
                direction=Direction(row["direction"]),
                timestamp=datetime.fromisoformat(row["timestamp"]),
                verified=bool(row["verified"]),
                reference_image=row["reference_image"],
            )
            for row in rows
        ]

