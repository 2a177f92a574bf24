import io
import os
import wave
import logging
import threading
from typing import List, Optional

import numpy as np
import requests
from dotenv import load_dotenv

from physio.voice_services import Voice

load_dotenv()

logger = logging.getLogger(__name__)

SPEECH_URL = "https://api.groq.com/openai/v1/audio/speech"
DEFAULT_TTS_MODEL = "playai-tts"
DEFAULT_VOICE_ID = "Fritz-PlayAI"

PLAYAI_VOICES = (
    Voice("Arista-PlayAI", "en-US", "female"),
    Voice("Atlas-PlayAI", "en-US", "male"),
    Voice("Basil-PlayAI", "en-US", "male"),
    Voice("Briggs-PlayAI", "en-US", "male"),
    Voice("Calum-PlayAI", "en-US", "male"),
    Voice("Celeste-PlayAI", "en-US", "female"),
    Voice("Cheyenne-PlayAI", "en-US", "female"),
    Voice("Chip-PlayAI", "en-US", "male"),
    Voice("Cillian-PlayAI", "en-US", "male"),
    Voice("Deedee-PlayAI", "en-US", "female"),
    Voice("Fritz-PlayAI", "en-US", "male"),
    Voice("Gail-PlayAI", "en-US", "female"),
    Voice("Indigo-PlayAI", "en-US", "female"),
    Voice("Mamaw-PlayAI", "en-US", "female"),
    Voice("Mason-PlayAI", "en-US", "male"),
    Voice("Mikail-PlayAI", "en-US", "male"),
    Voice("Mitch-PlayAI", "en-US", "male"),
    Voice("Quinn-PlayAI", "en-US", "female"),
    Voice("Thunder-PlayAI", "en-US", "male"),
)


def generate_speech_audio(text, voice_id=DEFAULT_VOICE_ID, model=DEFAULT_TTS_MODEL, speed=1.0, timeout=60):
    """
    Convert text to speech using the Groq API and return WAV bytes.

    Returns:
        bytes: Audio data, or None if generation fails
    """
    if not text or not text.strip():
        logger.debug("generate_speech_audio called with empty text")
        return None

    logger.debug(f"generate_speech_audio called for text: '{text[:50]}...'")
    api_key = os.environ.get("GROQ_API_KEY")
    if not api_key:
        logger.error("Groq API key not found. Set GROQ_API_KEY environment variable.")
        return None

    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json"
    }
    payload = {
        "model": model,
        "voice": voice_id,
        "input": text,
        "speed": speed,
        "response_format": "wav"
    }

    try:
        logger.debug(f"Making POST request to Groq TTS: {SPEECH_URL}")
        response = requests.post(SPEECH_URL, headers=headers, json=payload, timeout=timeout)
        logger.debug(f"Groq TTS response status: {response.status_code}")

        if response.status_code == 200:
            return response.content

        logger.error(f"Error from Groq API: Status {response.status_code}, Response: {response.text}")
        return None

    except requests.exceptions.Timeout:
        logger.error("Groq TTS request timed out.")
        return None
    except requests.exceptions.RequestException as e:
        logger.error(f"Error in text-to-speech (requests): {e}", exc_info=True)
        return None
    except Exception as e:
        logger.error(f"Unexpected error in text-to-speech: {e}", exc_info=True)
        return None


def decode_wav(audio_bytes):
    """Decode 16-bit PCM WAV bytes to (float32 frames, sample_rate, channels)"""
    with wave.open(io.BytesIO(audio_bytes), 'rb') as wf:
        channels = wf.getnchannels()
        sample_rate = wf.getframerate()
        pcm = np.frombuffer(wf.readframes(wf.getnframes()), dtype=np.int16)
    frames = (pcm.astype(np.float32) / 32768.0).reshape(-1, channels)
    return frames, sample_rate, channels


class _RenderingSynthesizer:
    """Shared voice roster and Groq rendering for the synthesizers below"""

    def __init__(self, model=DEFAULT_TTS_MODEL, default_voice=DEFAULT_VOICE_ID, render=generate_speech_audio,
                 voices=PLAYAI_VOICES):
        self.model = model
        self.default_voice = default_voice
        self._render = render
        self._voices = list(voices)

    def get_voices(self) -> List[Voice]:
        return list(self._voices)

    def render(self, utterance) -> Optional[bytes]:
        voice_id = utterance.voice.name if utterance.voice else self.default_voice
        return self._render(utterance.text, voice_id=voice_id, model=self.model, speed=utterance.rate)


class AudioClipSynthesizer(_RenderingSynthesizer):
    """
    Renders each utterance to WAV bytes instead of playing it locally.

    Used when the listener is remote: the last rendered clip is handed back
    to the client, which plays it.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.last_clip = None

    def speak(self, utterance):
        utterance.on_start()
        audio_bytes = self.render(utterance)
        if not audio_bytes:
            self.last_clip = None
            utterance.on_error("synthesis-failed")
            return
        self.last_clip = audio_bytes
        utterance.on_end()

    def take_clip(self) -> Optional[bytes]:
        clip, self.last_clip = self.last_clip, None
        return clip

    def cancel(self):
        self.last_clip = None

    def pause(self):
        pass

    def resume(self):
        pass


class SoundDeviceSynthesizer(_RenderingSynthesizer):
    """
    Local playback through a sounddevice output stream.

    Rendering happens on a worker thread; the stream callback feeds frames
    and writes silence while paused. Pitch is applied by scaling the playback
    sample rate and volume by scaling the samples.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self._stream = None
        self._paused = threading.Event()
        self._playback_id = 0

    def speak(self, utterance):
        with self._lock:
            self._playback_id += 1
            playback_id = self._playback_id
        threading.Thread(target=self._play, args=(utterance, playback_id),
                         name="speech-playback", daemon=True).start()

    def _is_current(self, playback_id):
        with self._lock:
            return playback_id == self._playback_id

    def _play(self, utterance, playback_id):
        # PortAudio is only needed for local playback
        import sounddevice as sd

        audio_bytes = self.render(utterance)
        if not self._is_current(playback_id):
            return
        if not audio_bytes:
            utterance.on_error("synthesis-failed")
            return

        try:
            frames, sample_rate, channels = decode_wav(audio_bytes)
        except (wave.Error, EOFError, ValueError) as e:
            logger.error(f"Could not decode synthesized audio: {e}")
            utterance.on_error("audio-decode-failed")
            return

        frames = frames * utterance.volume
        position = [0]

        def callback(outdata, frame_count, time_info, status):
            if self._paused.is_set():
                outdata.fill(0)
                return
            chunk = frames[position[0]:position[0] + frame_count]
            outdata[:len(chunk)] = chunk
            if len(chunk) < frame_count:
                outdata[len(chunk):] = 0
                raise sd.CallbackStop()
            position[0] += frame_count

        def finished():
            with self._lock:
                if playback_id != self._playback_id:
                    return
                self._stream = None
            utterance.on_end()

        try:
            stream = sd.OutputStream(samplerate=int(sample_rate * utterance.pitch), channels=channels,
                                     dtype='float32', callback=callback, finished_callback=finished)
            with self._lock:
                if playback_id != self._playback_id:
                    stream.close()
                    return
                self._paused.clear()
                self._stream = stream
            utterance.on_start()
            stream.start()
        except Exception as e:
            logger.error(f"Audio playback failed: {e}", exc_info=True)
            utterance.on_error("audio-output-failed")

    def cancel(self):
        with self._lock:
            self._playback_id += 1
            stream, self._stream = self._stream, None
        self._paused.clear()
        if stream is not None:
            try:
                stream.abort()
                stream.close()
            except Exception as e:
                logger.warning(f"Error stopping playback: {e}")

    def pause(self):
        self._paused.set()

    def resume(self):
        self._paused.clear()
