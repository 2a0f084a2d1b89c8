import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from xhyve_driver.models import MachineConfig, MachinePhase, MachineState


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS machines (
  name TEXT PRIMARY KEY,
  phase TEXT NOT NULL,
  uuid TEXT,
  ip_address TEXT,
  mac_address TEXT,
  pid INTEGER,
  config_json TEXT NOT NULL,
  reason TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_machines_phase ON machines(phase);
"""


@contextmanager
def connection(db_path: str):
    path = Path(db_path)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def initialize_state(db_path: str) -> None:
    with connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def upsert_machine(db_path: str, state: MachineState, config: MachineConfig) -> None:
    ts = now_iso()
    with connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO machines(name,phase,uuid,ip_address,mac_address,pid,config_json,reason,created_at,updated_at)
            VALUES(?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(name) DO UPDATE SET
              phase=excluded.phase,
              uuid=excluded.uuid,
              ip_address=excluded.ip_address,
              mac_address=excluded.mac_address,
              pid=excluded.pid,
              config_json=excluded.config_json,
              reason=excluded.reason,
              updated_at=excluded.updated_at
            """,
            (
                state.name,
                state.phase.value,
                state.uuid,
                state.ip_address,
                state.mac_address,
                state.pid,
                config.model_dump_json(),
                state.reason,
                ts,
                ts,
            ),
        )


def get_machine(db_path: str, name: str) -> tuple[MachineState, MachineConfig] | None:
    with connection(db_path) as conn:
        row = conn.execute("SELECT * FROM machines WHERE name=?", (name,)).fetchone()
    if not row:
        return None
    return _from_row(row)


def list_machines(db_path: str) -> list[tuple[MachineState, MachineConfig]]:
    with connection(db_path) as conn:
        rows = conn.execute("SELECT * FROM machines ORDER BY name").fetchall()
    return [_from_row(r) for r in rows]


def delete_machine(db_path: str, name: str) -> None:
    with connection(db_path) as conn:
        conn.execute("DELETE FROM machines WHERE name=?", (name,))


def _from_row(row: sqlite3.Row) -> tuple[MachineState, MachineConfig]:
    state = MachineState(
        name=row["name"],
        uuid=row["uuid"] or "",
        phase=MachinePhase(row["phase"]),
        ip_address=row["ip_address"] or "",
        mac_address=row["mac_address"],
        pid=int(row["pid"] or 0),
        reason=row["reason"],
    )
    return state, MachineConfig.model_validate_json(row["config_json"])
