"""
Turn-based dialogue between the patient and the assistant.

The orchestrator owns the message log and the step counter. Typed input and
final speech results become user messages immediately; the work of a turn
(pain extraction, reply generation, playback, step change) runs under a FIFO
ticket so replies land in the order their turns were submitted.

Steps: 0 pain intake, 1 informational (stats shown), 2 exercise ready.
"""

import time
import uuid
import logging
import threading
from concurrent.futures import CancelledError, TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import List, Optional

from physio.errors import SpeechUnsupported, SynthesisFailed
from physio.groq_integration import EXERCISE_FALLBACK_RESPONSE
from physio.models import AGENT, USER, ConversationContext, Message, PatientInfo, PhysioResponse, SpeechResult
from physio.pain_extractor import extract_pain_info
from physio.voice_services import SpeechEventChannel, VoiceSettings

logger = logging.getLogger(__name__)

WELCOME_ONLINE = (
    "Hello! I'm Fit4Life, your AI physiotherapy assistant. I can help you with pain assessment, "
    "exercise recommendations, and guidance. You can type or speak to me - just click the "
    "microphone button to start voice interaction."
)
WELCOME_OFFLINE = (
    "Hello! I'm Fit4Life, your physiotherapy assistant. I can help you with basic pain assessment "
    "and exercise guidance. For enhanced AI features, please add your Groq API key to the "
    "environment variables."
)
PROCESSING_FALLBACK_ONLINE = "I'm having trouble processing that right now. Please try again."
PROCESSING_FALLBACK_OFFLINE = (
    "I understand your message. For more detailed AI responses, please add your Groq API key "
    "to enable enhanced features."
)

STEP_INTAKE = 0
STEP_INFORMATIONAL = 1
STEP_EXERCISE_READY = 2


class TurnSequencer:
    """Ticket lock: turns run one at a time, in the order tickets were taken"""

    def __init__(self):
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    def take_ticket(self) -> int:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            return ticket

    @contextmanager
    def turn(self, ticket):
        with self._cond:
            self._cond.wait_for(lambda: self._serving == ticket)
        try:
            yield
        finally:
            with self._cond:
                self._serving += 1
                self._cond.notify_all()

    @property
    def pending(self) -> int:
        with self._cond:
            return self._next_ticket - self._serving


class ConversationOrchestrator:
    def __init__(self, generator, voice, sessions, extractor=extract_pain_info, boot_delay=1.0,
                 speak_while_listening=True, voice_settings: Optional[VoiceSettings] = None,
                 speak_timeout=120.0, session_id=None):
        self.generator = generator
        self.voice = voice
        self.sessions = sessions
        self.extractor = extractor
        self.boot_delay = boot_delay
        # Playback while capture is running can feed the reply back into the
        # recognizer; turn this off to pause capture around playback
        self.speak_while_listening = speak_while_listening
        self.voice_settings = voice_settings
        self.speak_timeout = speak_timeout
        self.conversation_id = session_id or str(uuid.uuid4())

        self.messages: List[Message] = []
        self.current_step = STEP_INTAKE
        self.pain_level: Optional[int] = None
        self.pain_location: Optional[str] = None
        self.show_stats = False
        self.exercise_unlocked = False
        self.is_speaking = False
        self.session_start = datetime.now(timezone.utc)

        self.speech_events = SpeechEventChannel()
        self._turns = TurnSequencer()
        self._lock = threading.RLock()
        self._message_seq = 0
        self._booted = False

    # State

    @property
    def is_processing(self) -> bool:
        return self._turns.pending > 0

    @property
    def current_voice_result(self) -> Optional[SpeechResult]:
        """Latest unread interim transcript, for live display only"""
        return self.speech_events.latest_interim

    @property
    def session_id(self) -> str:
        session = self.sessions.current_session
        return session.id if session is not None else self.conversation_id

    def boot(self) -> Optional[Message]:
        """Emit the welcome message once, after the boot delay"""
        with self._lock:
            if self._booted:
                return None
            self._booted = True

        if self.boot_delay:
            time.sleep(self.boot_delay)

        welcome = WELCOME_ONLINE if self.generator.is_available() else WELCOME_OFFLINE
        return self._add_message(welcome, AGENT)

    # Message log

    def _next_message_id(self):
        self._message_seq += 1
        return f"{int(time.time() * 1000)}-{self._message_seq:06d}"

    def _add_message(self, text, sender, is_voice=False, confidence=None) -> Message:
        with self._lock:
            message = Message(
                id=self._next_message_id(),
                text=text,
                sender=sender,
                timestamp=datetime.now(timezone.utc),
                is_voice=is_voice,
                confidence=confidence,
            )
            self.messages.append(message)
            step = self.current_step

        self.sessions.log_interaction("message", {
            'message': text,
            'sender': sender,
            'timestamp': message.timestamp.isoformat(),
            'step': step,
            'is_voice': is_voice,
            'confidence': confidence,
        })
        return message

    def _build_context(self, before: Optional[Message] = None, pain_level=None, pain_location=None):
        """
        Snapshot of the log for the generator.

        With `before`, the snapshot leaves out that user message and any user
        messages queued after it, so a turn never sees input from later turns.
        """
        with self._lock:
            if before is None:
                messages = list(self.messages)
            else:
                position = self.messages.index(before)
                messages = [m for i, m in enumerate(self.messages) if i < position or m.sender != USER]

        patient_info = PatientInfo(
            session_start=self.session_start,
            pain_level=self.pain_level if self.pain_level is not None else pain_level,
            pain_location=self.pain_location if self.pain_location is not None else pain_location,
        )
        return ConversationContext.from_messages(messages, self.session_id, self.current_step, patient_info)

    # Turns

    def handle_user_input(self, text: str, is_voice=False, confidence=None) -> Optional[Message]:
        """
        Submit one user utterance and run its turn.

        The user message is appended at once; the turn itself waits behind any
        earlier pending turns. Returns the agent reply, or None for empty input.
        """
        if not text or not text.strip():
            return None

        with self._lock:
            user_message = self._add_message(text, USER, is_voice, confidence)
            ticket = self._turns.take_ticket()

        with self._turns.turn(ticket):
            return self._run_turn(user_message)

    def _run_turn(self, user_message: Message) -> Message:
        text = user_message.text
        pain = self.extractor(text)

        if pain.pain_level is not None and self.current_step == STEP_INTAKE:
            self.pain_level = pain.pain_level
            self.pain_location = pain.pain_location or "unspecified"
            self.sessions.update_session({
                'pain_level_initial': self.pain_level,
                'pain_location': self.pain_location,
            })

        context = self._build_context(before=user_message, pain_level=pain.pain_level,
                                      pain_location=pain.pain_location)

        try:
            response: PhysioResponse = self.generator.generate_response(text, context)
        except Exception as e:
            logger.error(f"Error generating response: {e}", exc_info=True)
            fallback = PROCESSING_FALLBACK_ONLINE if self.generator.is_available() else PROCESSING_FALLBACK_OFFLINE
            return self._add_message(fallback, AGENT)

        agent_message = self._add_message(response.text, AGENT)

        if response.should_speak and self.voice.is_supported():
            self._speak(response.text)

        if response.next_step is not None and response.next_step != self.current_step:
            self._advance_step(response.next_step)

        self.sessions.log_interaction("conversation_progress", {
            'step': self.current_step,
            'pain_info_collected': {
                'pain_level': self.pain_level if self.pain_level is not None else pain.pain_level,
                'pain_location': self.pain_location if self.pain_location is not None else pain.pain_location,
            },
            'ai_response': response.text,
            'confidence': response.confidence,
        })
        return agent_message

    def _advance_step(self, step):
        logger.info(f"Conversation {self.conversation_id} moving from step {self.current_step} to {step}")
        self.current_step = step
        if step == STEP_INFORMATIONAL:
            self.show_stats = True
        if step >= STEP_EXERCISE_READY:
            self.exercise_unlocked = True

    def _speak(self, text):
        resume_capture = not self.speak_while_listening and self.voice.is_listening_active()
        if resume_capture:
            self.voice.stop_listening()

        self.is_speaking = True
        status = {'characters': len(text), 'completed': False}
        try:
            self.voice.speak(text, self.voice_settings).result(timeout=self.speak_timeout)
            status['completed'] = True
        except FutureTimeout:
            logger.error(f"Speech playback did not finish within {self.speak_timeout}s")
            self.voice.stop_speaking()
            status['error'] = 'timeout'
        except (SynthesisFailed, SpeechUnsupported, CancelledError) as e:
            logger.error(f"Speech synthesis error: {e}")
            status['error'] = str(e) or type(e).__name__
        except Exception as e:
            logger.error(f"Unexpected speech playback error: {e}", exc_info=True)
            status['error'] = str(e) or type(e).__name__
        finally:
            self.is_speaking = False
            if resume_capture:
                self.voice.start_listening(self.on_speech_result)

        self.sessions.log_interaction("voice_playback", status)

    # Speech input

    def on_speech_result(self, result: SpeechResult):
        """Capture callback; safe to call from recognizer threads"""
        self.speech_events.publish(result)

    def process_pending_speech(self) -> List[Message]:
        replies = []
        for result in self.speech_events.drain_finals():
            if not result.transcript.strip():
                continue
            reply = self.handle_user_input(result.transcript, is_voice=True, confidence=result.confidence)
            if reply is not None:
                replies.append(reply)
        return replies

    def handle_speech_result(self, result: SpeechResult) -> List[Message]:
        self.on_speech_result(result)
        return self.process_pending_speech()

    def wait_for_speech(self, timeout=None) -> Optional[Message]:
        """Block until the next final transcript arrives and run its turn"""
        result = self.speech_events.next_final(timeout=timeout)
        if result is None or not result.transcript.strip():
            return None
        return self.handle_user_input(result.transcript, is_voice=True, confidence=result.confidence)

    def start_voice_input(self) -> bool:
        started = self.voice.start_listening(self.on_speech_result)
        if started:
            self.sessions.log_interaction("voice_listen_start", {'step': self.current_step})
        return started

    def stop_voice_input(self):
        was_listening = self.voice.is_listening_active()
        self.voice.stop_listening()
        if was_listening:
            self.sessions.log_interaction("voice_listen_stop", {'step': self.current_step})

    # Exercise hand-off

    def request_exercise(self) -> Optional[Message]:
        """
        Hand off to the exercise flow once step 2 has been reached.

        Appends an exercise recommendation when a pain level is known.
        """
        if not self.exercise_unlocked:
            logger.warning("Exercise requested before the conversation unlocked it")
            return None

        ticket = self._turns.take_ticket()
        with self._turns.turn(ticket):
            self.sessions.log_interaction("transition_to_exercise", {
                'pain_level': self.pain_level,
                'pain_location': self.pain_location,
                'messages_exchanged': len(self.messages),
            })

            if self.pain_level is None:
                return None

            context = self._build_context()
            try:
                response = self.generator.generate_exercise_recommendation(
                    self.pain_level, self.pain_location or "unspecified", context)
            except Exception as e:
                logger.error(f"Error generating exercise recommendation: {e}", exc_info=True)
                response = PhysioResponse(text=EXERCISE_FALLBACK_RESPONSE, should_speak=True, confidence=0.7)

            message = self._add_message(response.text, AGENT)
            if response.should_speak and self.voice.is_supported():
                self._speak(response.text)
            return message

    def to_dict(self):
        return {
            'session_id': self.session_id,
            'messages': [m.to_dict() for m in self.messages],
            'current_step': self.current_step,
            'pain_level': self.pain_level,
            'pain_location': self.pain_location,
            'is_processing': self.is_processing,
            'show_stats': self.show_stats,
            'exercise_unlocked': self.exercise_unlocked,
            'is_speaking': self.is_speaking,
            'is_listening': self.voice.is_listening_active(),
            'current_voice_result': (
                asdict(self.current_voice_result) if self.current_voice_result is not None else None
            ),
        }
