import pytest
import os
from unittest.mock import MagicMock
import tempfile

from physio.database import SQLiteSessionStore, init_db
from physio.errors import ProviderCallFailed
from physio.groq_integration import Completion, ResponseGenerator
from physio.models import SpeechResult
from physio.session_manager import SessionManager
from physio.voice_services import Voice, VoiceServices


class FakeRecognizer:
    """Speech capture double; tests push results through emit()"""

    def __init__(self, fail_on_start=False):
        self.fail_on_start = fail_on_start
        self.start_calls = 0
        self.stop_calls = 0
        self.callbacks = None

    def start(self, on_result, on_error, on_end):
        self.start_calls += 1
        if self.fail_on_start:
            raise RuntimeError("microphone busy")
        self.callbacks = (on_result, on_error, on_end)

    def stop(self):
        self.stop_calls += 1
        callbacks, self.callbacks = self.callbacks, None
        if callbacks is not None:
            callbacks[2]()

    def emit(self, transcript, confidence=0.0, is_final=False):
        self.callbacks[0](SpeechResult(transcript=transcript, confidence=confidence, is_final=is_final))

    def fail(self, error="network"):
        self.callbacks[1](error)


class FakeSynthesizer:
    """
    Speech synthesis double.

    With auto_finish the utterance starts and ends inside speak(); otherwise
    the test finishes it with finish() or fail().
    """

    def __init__(self, voices=None, auto_finish=True, error=None):
        self.voices = voices if voices is not None else [
            Voice("Atlas-PlayAI", "en-US", "male"),
            Voice("Celeste-PlayAI", "en-US", "female"),
        ]
        self.auto_finish = auto_finish
        self.error = error
        self.spoken = []
        self.current = None
        self.cancel_calls = 0
        self.pause_calls = 0
        self.resume_calls = 0

    def get_voices(self):
        return list(self.voices)

    def speak(self, utterance):
        self.spoken.append(utterance)
        self.current = utterance
        utterance.on_start()
        if self.error is not None:
            utterance.on_error(self.error)
        elif self.auto_finish:
            utterance.on_end()

    def finish(self):
        self.current.on_end()

    def fail(self, error="audio-busy"):
        self.current.on_error(error)

    def cancel(self):
        self.cancel_calls += 1

    def pause(self):
        self.pause_calls += 1

    def resume(self):
        self.resume_calls += 1


class FakeProvider:
    """Chat provider double returning scripted completions"""

    def __init__(self, replies=None, finish_reason="stop", error=None):
        self.replies = list(replies or ["Thanks for telling me about that. How long has it been sore?"])
        self.finish_reason = finish_reason
        self.error = error
        self.calls = []

    def complete(self, system_prompt, history, user_message, max_tokens, temperature):
        self.calls.append({
            'system_prompt': system_prompt,
            'history': history,
            'user_message': user_message,
            'max_tokens': max_tokens,
            'temperature': temperature,
        })
        if self.error is not None:
            raise ProviderCallFailed(self.error)
        text = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return Completion(text=text, finish_reason=self.finish_reason)


@pytest.fixture
def mock_groq_client():
    """Mock Groq client for testing"""
    mock = MagicMock()
    mock.chat.completions.create.return_value = MagicMock(
        choices=[MagicMock(message=MagicMock(content="Test response from the physio assistant"),
                           finish_reason="stop")]
    )
    return mock


@pytest.fixture
def temp_db_path():
    """Temporary sqlite file with the patient tables created"""
    fd, temp_path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    assert init_db(temp_path)
    yield temp_path
    os.unlink(temp_path)


@pytest.fixture
def empty_db_path():
    """Temporary sqlite file without any tables"""
    fd, temp_path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield temp_path
    os.unlink(temp_path)


@pytest.fixture
def store(temp_db_path):
    return SQLiteSessionStore(temp_db_path)


@pytest.fixture
def sessions(store):
    return SessionManager(store, patient_id="patient-1")


@pytest.fixture
def fake_recognizer():
    return FakeRecognizer()


@pytest.fixture
def fake_synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def voice(fake_recognizer, fake_synthesizer):
    return VoiceServices(recognizer=fake_recognizer, synthesizer=fake_synthesizer)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def online_generator(fake_provider):
    return ResponseGenerator(provider=fake_provider)


@pytest.fixture
def offline_generator():
    return ResponseGenerator(provider=None)
