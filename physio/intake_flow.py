"""
Patient journey around the conversation: landing, conversation, guided
exercise, feedback and (when pain persists) an NHS booking hand-off.

    blob -> conversation -> exercise -> blob
                                     -> booking -> blob
"""

import time
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from physio.errors import BackendUnavailable, InvalidTransition

logger = logging.getLogger(__name__)

BLOB = "blob"
CONVERSATION = "conversation"
EXERCISE = "exercise"
BOOKING = "booking"

EXERCISE_TYPE = "neck_mobility"
NECK_MOBILITY_STEPS = (
    "Sit comfortably in a chair with your back straight",
    "Slowly turn your head to the right, hold for 5 seconds",
    "Return to center position",
    "Slowly turn your head to the left, hold for 5 seconds",
    "Return to center and repeat 5 times",
)

FEEDBACK_OPTIONS = ("better", "pain")
# Reported pain after the exercise when the patient gives no number
DEFAULT_PAIN_AFTER = {"better": 3, "pain": 7}
BOOKING_LEAD_DAYS = 14

DB_SETUP_REQUIRED = (
    "Database tables need to be created. Please run the SQL migration script "
    "'scripts/001_create_patient_tables.sql' before starting a session."
)
SESSION_TRACKING_DISABLED = "Failed to start session. The app will continue without session tracking."


def utc_now():
    return datetime.now(timezone.utc)


def new_booking_id():
    return f"NHS-{str(int(time.time() * 1000))[-6:]}"


@dataclass
class ExerciseProgress:
    current_step: int = 0
    is_playing: bool = False
    show_feedback: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self):
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds())

    def to_dict(self):
        return {
            'exercise_type': EXERCISE_TYPE,
            'steps': list(NECK_MOBILITY_STEPS),
            'current_step': self.current_step,
            'current_instruction': NECK_MOBILITY_STEPS[self.current_step],
            'is_playing': self.is_playing,
            'show_feedback': self.show_feedback,
        }


@dataclass
class Booking:
    booking_id: str
    appointment_date: datetime

    def to_dict(self):
        return {'booking_id': self.booking_id, 'appointment_date': self.appointment_date.isoformat()}


class IntakeFlow:
    """
    One patient's pass through the app.

    Args:
        sessions: SessionManager bound to the patient
        conversation_factory: zero-argument callable returning a fresh
            ConversationOrchestrator for each conversation
    """

    def __init__(self, sessions, conversation_factory):
        self.sessions = sessions
        self.conversation_factory = conversation_factory

        self.state = BLOB
        self.conversation = None
        self.exercise = ExerciseProgress()
        self.booking: Optional[Booking] = None
        self.feedback: Optional[str] = None
        self.db_error: Optional[str] = None

    def _require(self, *states):
        if self.state not in states:
            raise InvalidTransition(f"Action not available in state '{self.state}'")

    def _close_conversation(self):
        if self.conversation is not None:
            self.conversation.stop_voice_input()
            self.conversation.voice.stop_speaking()

    # Conversation

    def start_conversation(self, method="text"):
        """
        Open a session and enter the conversation.

        A missing backend or a failed insert does not block the conversation;
        the problem is kept in `db_error` for the client to show. A missing
        identity still raises NotAuthenticated.
        """
        self.db_error = None
        try:
            session = self.sessions.start_session(method=method)
            if session is None:
                self.db_error = SESSION_TRACKING_DISABLED
        except BackendUnavailable as e:
            logger.error(f"Failed to start session: {e}")
            self.db_error = DB_SETUP_REQUIRED

        self.sessions.log_interaction("conversation_start", {'method': method})

        self._close_conversation()
        self.conversation = self.conversation_factory()
        self.exercise = ExerciseProgress()
        self.booking = None
        self.feedback = None
        self.state = CONVERSATION

        self.conversation.boot()
        return self.conversation

    def show_exercise(self):
        self._require(CONVERSATION)
        if not self.conversation.exercise_unlocked:
            raise InvalidTransition("The conversation has not reached the exercise step yet")

        recommendation = self.conversation.request_exercise()
        self.sessions.log_interaction("exercise_start", {'from_state': CONVERSATION})
        self.exercise = ExerciseProgress()
        self.state = EXERCISE
        return recommendation

    # Exercise

    def play_exercise(self):
        self._require(EXERCISE)
        progress = self.exercise
        if progress.is_playing:
            return progress
        progress.is_playing = True
        if progress.started_at is None:
            progress.started_at = utc_now()
        self.sessions.log_interaction("exercise_play", {
            'action': 'start',
            'timestamp': utc_now().isoformat(),
            'exercise_type': EXERCISE_TYPE,
        })
        return progress

    def pause_exercise(self):
        self._require(EXERCISE)
        progress = self.exercise
        if not progress.is_playing:
            return progress
        progress.is_playing = False
        self.sessions.log_interaction("exercise_play", {
            'action': 'pause',
            'current_step': progress.current_step,
            'timestamp': utc_now().isoformat(),
        })
        return progress

    def advance_exercise(self):
        """Move to the next instruction; completes the exercise after the last one"""
        self._require(EXERCISE)
        progress = self.exercise
        if progress.show_feedback:
            return progress

        if progress.current_step >= len(NECK_MOBILITY_STEPS) - 1:
            progress.is_playing = False
            progress.show_feedback = True
            progress.completed_at = utc_now()
            if progress.started_at is None:
                progress.started_at = progress.completed_at
            self.sessions.log_interaction("exercise_complete", {
                'duration_seconds': progress.duration_seconds,
                'steps_completed': len(NECK_MOBILITY_STEPS),
                'completion_time': progress.completed_at.isoformat(),
            })
            return progress

        progress.current_step += 1
        self.sessions.log_interaction("exercise_step", {
            'step_number': progress.current_step,
            'step_description': NECK_MOBILITY_STEPS[progress.current_step],
            'timestamp': utc_now().isoformat(),
        })
        return progress

    def reset_exercise(self):
        self._require(EXERCISE)
        previous_step = self.exercise.current_step
        self.exercise = ExerciseProgress()
        self.sessions.log_interaction("exercise_reset", {
            'previous_step': previous_step,
            'timestamp': utc_now().isoformat(),
        })
        return self.exercise

    def submit_feedback(self, feedback, pain_level_after=None):
        self._require(EXERCISE)
        if feedback not in FEEDBACK_OPTIONS:
            raise ValueError(f"Feedback must be one of {FEEDBACK_OPTIONS}, got {feedback!r}")
        if pain_level_after is None:
            pain_level_after = DEFAULT_PAIN_AFTER[feedback]

        self.feedback = feedback
        progress = self.exercise
        self.sessions.log_interaction("exercise_feedback", {
            'feedback': feedback,
            'pain_level_after': pain_level_after,
            'exercise_duration_seconds': progress.duration_seconds,
            'steps_completed': progress.current_step + 1,
            'total_steps': len(NECK_MOBILITY_STEPS),
            'exercise_type': EXERCISE_TYPE,
        })
        self.sessions.update_session({
            'completed_exercise': True,
            'exercise_feedback': feedback,
            'pain_level_after': pain_level_after,
        })

        if feedback == "better":
            self.sessions.end_session({
                'completed_exercise': True,
                'exercise_feedback': feedback,
                'pain_level_after': pain_level_after,
            })
            self._close_conversation()
            self.state = BLOB
        else:
            self.sessions.log_interaction("booking_flow_start", {'reason': 'pain_persists'})
            self.state = BOOKING
        return self.state

    # Booking

    def open_booking(self) -> Booking:
        self._require(BOOKING)
        if self.booking is None:
            self.booking = Booking(
                booking_id=new_booking_id(),
                appointment_date=utc_now() + timedelta(days=BOOKING_LEAD_DAYS),
            )
            self.sessions.log_interaction("booking_confirmation_view", {
                'booking_id': self.booking.booking_id,
                'appointment_date': self.booking.appointment_date.isoformat(),
                'timestamp': utc_now().isoformat(),
            })
            self.sessions.update_session({
                'booking_requested': True,
                'booking_id': self.booking.booking_id,
            })
        return self.booking

    def complete_booking(self):
        self._require(BOOKING)
        booking = self.open_booking()
        self.sessions.log_interaction("booking_complete", {'booking_id': booking.booking_id})
        self.sessions.end_session({
            'completed_exercise': True,
            'exercise_feedback': self.feedback,
            'booking_requested': True,
            'booking_id': booking.booking_id,
        })
        self._close_conversation()
        self.state = BLOB
        return booking

    def sign_out(self):
        self._close_conversation()
        self.sessions.end_session()
        self.sessions.clear_identity()
        self.conversation = None
        self.state = BLOB

    def to_dict(self):
        return {
            'state': self.state,
            'db_error': self.db_error,
            'feedback': self.feedback,
            'session_active': self.sessions.has_open_session,
            'exercise': self.exercise.to_dict() if self.state == EXERCISE else None,
            'booking': self.booking.to_dict() if self.booking is not None else None,
        }
