"""
Capability-checked speech capture and synthesis.

VoiceServices wraps two platform primitives behind a small interface:

* a SpeechRecognizer that streams SpeechResult events (interim and final)
  to a callback until stopped, and
* a SpeechSynthesizer that plays one Utterance at a time and reports start,
  end and error through the utterance's callbacks.

Both primitives are optional. A missing primitive makes the matching channel
report itself unsupported instead of raising at construction time, so the
conversation can fall back to text-only interaction.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

from physio.errors import SpeechUnsupported, SynthesisFailed
from physio.models import SpeechResult

logger = logging.getLogger(__name__)

RATE_RANGE = (0.5, 2.0)
PITCH_RANGE = (0.5, 2.0)
VOLUME_RANGE = (0.0, 1.0)


def _clamp(value, bounds, default):
    if value is None:
        return default
    low, high = bounds
    return max(low, min(high, float(value)))


@dataclass(frozen=True)
class Voice:
    name: str
    lang: str = "en-US"
    gender: Optional[str] = None


@dataclass
class VoiceSettings:
    voice: Optional[str] = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0

    def clamped(self) -> "VoiceSettings":
        return VoiceSettings(
            voice=self.voice or None,
            rate=_clamp(self.rate, RATE_RANGE, 1.0),
            pitch=_clamp(self.pitch, PITCH_RANGE, 1.0),
            volume=_clamp(self.volume, VOLUME_RANGE, 1.0),
        )


@dataclass
class Utterance:
    text: str
    voice: Optional[Voice] = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    on_start: Callable[[], None] = field(default=lambda: None, repr=False)
    on_end: Callable[[], None] = field(default=lambda: None, repr=False)
    on_error: Callable[[str], None] = field(default=lambda error: None, repr=False)


class SpeechRecognizer(Protocol):
    def start(self, on_result: Callable[[SpeechResult], None], on_error: Callable[[str], None],
              on_end: Callable[[], None]) -> None: ...

    def stop(self) -> None: ...


class SpeechSynthesizer(Protocol):
    def get_voices(self) -> List[Voice]: ...

    def speak(self, utterance: Utterance) -> None: ...

    def cancel(self) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...


class SpeechEventChannel:
    """
    Buffer between capture callbacks and the dialogue.

    Latest interim wins: a new interim result replaces any unread one.
    Finals are queued in arrival order and never dropped. A final result
    also clears the pending interim, since it supersedes it.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._interim: Optional[SpeechResult] = None
        self._finals = deque()

    def publish(self, result: SpeechResult):
        with self._cond:
            if result.is_final:
                self._finals.append(result)
                self._interim = None
            else:
                self._interim = result
            self._cond.notify_all()

    @property
    def latest_interim(self) -> Optional[SpeechResult]:
        with self._cond:
            return self._interim

    def next_final(self, timeout=None) -> Optional[SpeechResult]:
        with self._cond:
            if not self._finals:
                self._cond.wait_for(lambda: bool(self._finals), timeout=timeout)
            if self._finals:
                return self._finals.popleft()
            return None

    def drain_finals(self) -> List[SpeechResult]:
        with self._cond:
            finals = list(self._finals)
            self._finals.clear()
            return finals

    def clear(self):
        with self._cond:
            self._interim = None
            self._finals.clear()


class VoiceServices:
    """Speech capture and synthesis for one application scope"""

    def __init__(self, recognizer: Optional[SpeechRecognizer] = None,
                 synthesizer: Optional[SpeechSynthesizer] = None):
        self.recognizer = recognizer
        self.synthesizer = synthesizer
        self._lock = threading.RLock()

        self._is_listening = False
        self._capture_generation = 0
        self._on_transcript_update = None

        self._is_speaking = False
        self._current_utterance = None
        self._current_future = None

    # Speech-to-text

    def start_listening(self, on_transcript_update: Callable[[SpeechResult], None]) -> bool:
        if self.recognizer is None:
            logger.error("Speech recognition not supported")
            return False

        with self._lock:
            was_listening = self._is_listening
        # recognizer.stop can join a worker thread that needs the lock
        if was_listening:
            self.stop_listening()

        with self._lock:
            self._capture_generation += 1
            generation = self._capture_generation
            self._on_transcript_update = on_transcript_update
            self._is_listening = True

        try:
            self.recognizer.start(
                on_result=lambda result: self._handle_result(generation, result),
                on_error=lambda error: self._handle_capture_error(generation, error),
                on_end=lambda: self._handle_capture_end(generation),
            )
        except Exception as e:
            logger.error(f"Failed to start speech recognition: {e}", exc_info=True)
            with self._lock:
                self._is_listening = False
                self._on_transcript_update = None
            return False

        logger.debug(f"Speech capture session {generation} started")
        return True

    def stop_listening(self):
        with self._lock:
            was_listening = self._is_listening
            self._is_listening = False
            self._on_transcript_update = None
            # Late results from the stopped session are dropped
            self._capture_generation += 1

        if was_listening and self.recognizer is not None:
            try:
                self.recognizer.stop()
            except Exception as e:
                logger.warning(f"Error stopping speech recognition: {e}")

    def is_listening_active(self) -> bool:
        return self._is_listening

    def _handle_result(self, generation, result):
        with self._lock:
            if generation != self._capture_generation or not self._is_listening:
                return
            callback = self._on_transcript_update
        if callback is not None:
            callback(result)

    def _handle_capture_error(self, generation, error):
        logger.error(f"Speech recognition error: {error}")
        with self._lock:
            if generation == self._capture_generation:
                self._is_listening = False

    def _handle_capture_end(self, generation):
        with self._lock:
            if generation == self._capture_generation:
                self._is_listening = False

    # Text-to-speech

    def speak(self, text: str, settings: Optional[VoiceSettings] = None) -> Future:
        """
        Start speaking `text`, cancelling any utterance already in flight.

        Returns:
            Future: resolves when playback finishes; fails with SynthesisFailed
            on a runtime error or interruption, and with SpeechUnsupported when
            no synthesizer is available
        """
        future = Future()
        if self.synthesizer is None:
            future.set_exception(SpeechUnsupported("Speech synthesis not supported"))
            return future

        self.stop_speaking()

        settings = (settings or VoiceSettings()).clamped()
        utterance = Utterance(
            text=text,
            voice=self._get_voice(settings.voice),
            rate=settings.rate,
            pitch=settings.pitch,
            volume=settings.volume,
        )
        utterance.on_start = lambda: self._handle_speech_start(utterance)
        utterance.on_end = lambda: self._finish_utterance(utterance, None)
        utterance.on_error = lambda error: self._finish_utterance(
            utterance, SynthesisFailed(f"Speech synthesis error: {error}"))

        with self._lock:
            self._current_utterance = utterance
            self._current_future = future
            self._is_speaking = True

        try:
            self.synthesizer.speak(utterance)
        except Exception as e:
            logger.error(f"Speech synthesis failed to start: {e}", exc_info=True)
            self._finish_utterance(utterance, SynthesisFailed(str(e)))

        return future

    def _handle_speech_start(self, utterance):
        with self._lock:
            if utterance is self._current_utterance:
                self._is_speaking = True

    def _finish_utterance(self, utterance, error):
        with self._lock:
            if utterance is not self._current_utterance:
                return
            future = self._current_future
            self._current_utterance = None
            self._current_future = None
            self._is_speaking = False

        if future is not None and not future.done():
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

    def stop_speaking(self):
        with self._lock:
            utterance = self._current_utterance
            if utterance is None:
                return
        try:
            self.synthesizer.cancel()
        except Exception as e:
            logger.warning(f"Error cancelling speech synthesis: {e}")
        self._finish_utterance(utterance, SynthesisFailed("Speech synthesis interrupted"))

    def pause_speaking(self):
        if self.synthesizer is not None and self._is_speaking:
            self.synthesizer.pause()

    def resume_speaking(self):
        if self.synthesizer is not None and self._is_speaking:
            self.synthesizer.resume()

    def is_speaking_active(self) -> bool:
        return self._is_speaking

    # Voice management

    def get_available_voices(self) -> List[Voice]:
        if self.synthesizer is None:
            return []
        try:
            return list(self.synthesizer.get_voices())
        except Exception as e:
            logger.warning(f"Voice roster unavailable: {e}")
            return []

    def _get_voice(self, voice_name=None) -> Optional[Voice]:
        voices = self.get_available_voices()
        if voice_name:
            for voice in voices:
                if voice.name == voice_name:
                    return voice
            logger.debug(f"Voice {voice_name!r} not found, using default")

        # Default to a female English voice
        for voice in voices:
            if voice.lang.startswith('en') and (voice.gender or '').lower() == 'female':
                return voice
        return voices[0] if voices else None

    # Utility

    def is_supported(self) -> bool:
        return self.recognizer is not None and self.synthesizer is not None

    def get_capabilities(self):
        return {
            'speech_recognition': self.recognizer is not None,
            'speech_synthesis': self.synthesizer is not None,
            'voices': len(self.get_available_voices()),
        }
