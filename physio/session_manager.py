import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from physio.errors import BackendUnavailable, InteractionLogFailed, NotAuthenticated
from physio.models import PatientSession

logger = logging.getLogger(__name__)

MISSING_TABLE_MARKERS = ("no such table", "does not exist")

INITIAL_FIELDS = ('pain_level_initial', 'pain_location', 'symptoms')
END_FIELDS = ('completed_exercise', 'exercise_feedback', 'pain_level_after', 'booking_requested', 'booking_id')


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionManager:
    """
    Owns the single open PatientSession handle for one patient.

    Interactions logged while no session is open are dropped, not queued.
    Calling start_session while a session is open ends that session first
    (its session_end record carries reason "superseded"). If that session
    cannot be closed, start_session returns None and keeps the old handle so
    a later call can retry the close; a second session is never opened.

    Only BackendUnavailable and NotAuthenticated leave this class; every
    other persistence failure is logged and reported through the return
    value.
    """

    def __init__(self, store, patient_id=None):
        self.store = store
        self.patient_id = patient_id
        self.current_session: Optional[PatientSession] = None

    def bind_identity(self, patient_id):
        self.patient_id = patient_id

    def clear_identity(self):
        self.patient_id = None

    @property
    def has_open_session(self) -> bool:
        return self.current_session is not None

    def check_backend(self):
        try:
            self.store.probe()
        except Exception as e:
            if any(marker in str(e).lower() for marker in MISSING_TABLE_MARKERS):
                logger.error(f"Session tables missing: {e}")
                raise BackendUnavailable() from e
            raise

    def start_session(self, initial: Optional[Dict[str, Any]] = None, method="text") -> Optional[PatientSession]:
        """
        Open a new session for the bound patient.

        Args:
            initial: optional pain_level_initial, pain_location and symptoms
            method: how the conversation was started ("text" or "voice")

        Returns:
            PatientSession: the new open session, or None if the backend
            rejected the probe or insert for a reason other than missing tables,
            or an open session could not be closed

        Raises:
            BackendUnavailable: the session tables do not exist
            NotAuthenticated: no patient identity is bound
        """
        try:
            self.check_backend()
        except BackendUnavailable:
            raise
        except Exception as e:
            logger.error(f"Error checking session backend: {e}", exc_info=True)
            return None

        if not self.patient_id:
            raise NotAuthenticated()

        if self.current_session is not None:
            logger.info(f"Superseding open session {self.current_session.id}")
            if not self.end_session(reason="superseded"):
                logger.error(f"Could not close session {self.current_session.id}; not opening another")
                return None

        initial = {k: v for k, v in (initial or {}).items() if k in INITIAL_FIELDS}
        fields = dict(initial)
        fields.update({
            'patient_id': self.patient_id,
            'session_start': utc_now(),
            'session_data': {'started_via': 'app_interaction'},
        })

        try:
            record = self.store.insert_session(fields)
        except Exception as e:
            logger.error(f"Error starting session: {e}", exc_info=True)
            return None

        self.current_session = PatientSession.from_record(record)
        logger.info(f"Started session {self.current_session.id} for patient {self.patient_id}")

        self.log_interaction("session_start", {
            'method': method,
            'initial_data': initial or None,
        })
        return self.current_session

    def end_session(self, end_data: Optional[Dict[str, Any]] = None, reason=None) -> bool:
        """Close the open session; returns False if nothing was closed"""
        if self.current_session is None:
            return False

        end_data = {k: v for k, v in (end_data or {}).items() if k in END_FIELDS}
        updates = dict(end_data)
        updates['session_end'] = utc_now()

        session_id = self.current_session.id
        try:
            self.store.update_session(session_id, updates)
        except Exception as e:
            logger.error(f"Error ending session {session_id}: {e}", exc_info=True)
            return False

        log_data = dict(end_data)
        if reason is not None:
            log_data['reason'] = reason
        self.log_interaction("session_end", log_data or None)

        self.current_session = None
        logger.info(f"Ended session {session_id}")
        return True

    def update_session(self, updates: Dict[str, Any]) -> Optional[PatientSession]:
        if self.current_session is None:
            return None

        known = PatientSession.field_names() - {'id', 'patient_id', 'session_end'}
        unknown = set(updates) - known
        if unknown:
            logger.warning(f"Ignoring unknown session fields: {sorted(unknown)}")
        updates = {k: v for k, v in updates.items() if k in known}

        try:
            record = self.store.update_session(self.current_session.id, updates)
        except Exception as e:
            logger.error(f"Error updating session: {e}", exc_info=True)
            return None

        if record is None:
            logger.error(f"Session {self.current_session.id} disappeared from the store")
            return None

        self.current_session = PatientSession.from_record(record)
        return self.current_session

    def log_interaction(self, interaction_type: str, data: Any = None) -> bool:
        """Best-effort append to the interaction log of the open session"""
        if self.current_session is None:
            logger.debug(f"No open session - dropping '{interaction_type}' interaction")
            return False

        try:
            self.store.insert_interaction({
                'session_id': self.current_session.id,
                'interaction_type': interaction_type,
                'interaction_data': data,
                'timestamp': utc_now(),
            })
        except Exception as e:
            failure = InteractionLogFailed(f"Could not log '{interaction_type}': {e}")
            logger.error(f"Error logging interaction: {failure}")
            return False
        return True
