import os
import json
import uuid
import sqlite3
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from physio.environment import DEFAULT_DB_PATH
from physio.errors import SETUP_SCRIPT

logger = logging.getLogger(__name__)

SETUP_SCRIPT_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), SETUP_SCRIPT)

SESSION_COLUMNS = (
    'id', 'patient_id', 'session_start', 'session_end', 'pain_level_initial', 'pain_location',
    'symptoms', 'completed_exercise', 'exercise_feedback', 'pain_level_after',
    'booking_requested', 'booking_id', 'session_data',
)
JSON_COLUMNS = ('symptoms', 'session_data', 'interaction_data')
BOOL_COLUMNS = ('completed_exercise', 'booking_requested')


@contextmanager
def get_db_connection(db_path=DEFAULT_DB_PATH):
    """
    Context manager for database connections
    Ensures proper connection handling and cleanup
    """
    conn = None
    try:
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        yield conn
    except sqlite3.Error as e:
        if conn:
            conn.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        if conn:
            conn.close()


def init_db(db_path=DEFAULT_DB_PATH, script_path=SETUP_SCRIPT_PATH) -> bool:
    """
    Create the patient tables by running the setup SQL script

    Returns:
        bool: True if successful, False otherwise
    """
    try:
        with open(script_path, 'r', encoding='utf-8') as f:
            script = f.read()
        with get_db_connection(db_path) as conn:
            conn.executescript(script)
            conn.commit()
        logger.info(f"Database initialized successfully at {db_path}")
        return True
    except (OSError, sqlite3.Error) as e:
        logger.error(f"Failed to initialize database: {e}")
        return False


def _encode(column, value):
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(value)
    if column in BOOL_COLUMNS:
        return 1 if value else 0
    return value


def _decode_row(row) -> Dict[str, Any]:
    record = dict(row)
    for column in JSON_COLUMNS:
        if record.get(column) is not None:
            try:
                record[column] = json.loads(record[column])
            except (TypeError, ValueError):
                logger.warning(f"Could not decode {column} for record {record.get('id')}")
    for column in BOOL_COLUMNS:
        if column in record:
            record[column] = bool(record[column])
    return record


class SQLiteSessionStore:
    """
    Patient session persistence on a local sqlite database.

    Write methods raise sqlite3.Error on failure; callers decide whether a
    failure is fatal. The tables must already exist (see init_db).
    """

    def __init__(self, db_path=DEFAULT_DB_PATH):
        self.db_path = db_path

    def probe(self):
        """Cheap read against both tables; raises if either is missing"""
        with get_db_connection(self.db_path) as conn:
            conn.execute('SELECT id FROM patient_sessions LIMIT 1').fetchall()
            conn.execute('SELECT id FROM patient_interactions LIMIT 1').fetchall()

    def insert_session(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        record = {k: v for k, v in fields.items() if k in SESSION_COLUMNS}
        record.setdefault('id', str(uuid.uuid4()))
        record.setdefault('session_data', {})

        columns = list(record)
        placeholders = ', '.join('?' for _ in columns)
        with get_db_connection(self.db_path) as conn:
            conn.execute(
                f"INSERT INTO patient_sessions ({', '.join(columns)}) VALUES ({placeholders})",
                [_encode(c, record[c]) for c in columns]
            )
            conn.commit()
        logger.info(f"Created patient session {record['id']} for patient {record.get('patient_id')}")
        return self.get_session(record['id'])

    def update_session(self, session_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        updates = {k: v for k, v in fields.items() if k in SESSION_COLUMNS and k != 'id'}
        if updates:
            assignments = ', '.join(f"{c} = ?" for c in updates)
            with get_db_connection(self.db_path) as conn:
                cursor = conn.execute(
                    f"UPDATE patient_sessions SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    [_encode(c, v) for c, v in updates.items()] + [session_id]
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise sqlite3.DatabaseError(f"Session {session_id} not found")
            logger.debug(f"Updated session {session_id}: {sorted(updates)}")
        return self.get_session(session_id)

    def insert_interaction(self, fields: Dict[str, Any]) -> bool:
        with get_db_connection(self.db_path) as conn:
            conn.execute(
                'INSERT INTO patient_interactions (session_id, interaction_type, interaction_data, timestamp) '
                'VALUES (?, ?, ?, ?)',
                (fields['session_id'], fields['interaction_type'],
                 json.dumps(fields.get('interaction_data') or {}), fields['timestamp'])
            )
            conn.commit()
        return True

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {', '.join(SESSION_COLUMNS)} FROM patient_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return _decode_row(row) if row else None

    def list_sessions(self, patient_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = f"SELECT {', '.join(SESSION_COLUMNS)} FROM patient_sessions"
        params = ()
        if patient_id is not None:
            query += ' WHERE patient_id = ?'
            params = (patient_id,)
        query += ' ORDER BY session_start DESC'
        with get_db_connection(self.db_path) as conn:
            return [_decode_row(row) for row in conn.execute(query, params).fetchall()]

    def list_interactions(self, session_id: str) -> List[Dict[str, Any]]:
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(
                'SELECT id, session_id, interaction_type, interaction_data, timestamp '
                'FROM patient_interactions WHERE session_id = ? ORDER BY id',
                (session_id,)
            ).fetchall()
        return [_decode_row(row) for row in rows]
