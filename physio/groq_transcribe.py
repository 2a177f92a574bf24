import io
import os
import math
import queue
import wave
import logging
import threading
from typing import Optional, Tuple

import numpy as np
import requests
from dotenv import load_dotenv

from physio.models import SpeechResult

load_dotenv()

logger = logging.getLogger(__name__)

TRANSCRIPTION_URL = "https://api.groq.com/openai/v1/audio/transcriptions"
DEFAULT_STT_MODEL = "whisper-large-v3-turbo"


def transcribe_audio_verbose(audio_bytes, model=DEFAULT_STT_MODEL, timeout=30) -> Tuple[str, float]:
    """
    Transcribe audio data using the Groq Whisper API.

    Args:
        audio_bytes (bytes): WAV encoded audio
        model (str): Groq Whisper model to use
        timeout (float): Request timeout in seconds

    Returns:
        Tuple[str, float]: transcript and a 0-1 confidence derived from the
        segments' average log-probability; ("", 0.0) if transcription failed
    """
    if not audio_bytes:
        return "", 0.0

    api_key = os.environ.get('GROQ_API_KEY')
    if not api_key:
        logger.error("GROQ_API_KEY not set in environment variables")
        return "", 0.0

    headers = {"Authorization": f"Bearer {api_key}"}
    files = {
        "file": ("audio.wav", audio_bytes, "audio/wav"),
        "model": (None, model),
        "response_format": (None, "verbose_json"),
        "language": (None, "en"),
        "temperature": (None, "0.0"),
    }

    try:
        logger.debug(f"Transcribing {len(audio_bytes)} bytes with model: {model}")
        response = requests.post(TRANSCRIPTION_URL, headers=headers, files=files, timeout=timeout)
    except requests.exceptions.Timeout:
        logger.error("Groq transcription request timed out.")
        return "", 0.0
    except Exception as e:
        logger.error(f"Error transcribing audio: {e}", exc_info=True)
        return "", 0.0

    if response.status_code != 200:
        logger.error(f"Error from Groq API: Status {response.status_code}, Response: {response.text}")
        return "", 0.0

    try:
        transcription_data = response.json()
    except ValueError as e:
        logger.error(f"Malformed transcription response: {e}")
        return "", 0.0

    text = (transcription_data.get("text") or "").strip()
    return text, segment_confidence(transcription_data.get("segments") or [])


def transcribe_audio_data(audio_bytes, model=DEFAULT_STT_MODEL):
    """Transcribe audio data, returning only the text ("" on failure)"""
    text, _ = transcribe_audio_verbose(audio_bytes, model=model)
    return text


def segment_confidence(segments):
    """Mean probability across Whisper segments, from their avg_logprob"""
    logprobs = [s.get("avg_logprob") for s in segments if s.get("avg_logprob") is not None]
    if not logprobs:
        return 0.0
    return max(0.0, min(1.0, math.exp(sum(logprobs) / len(logprobs))))


def encode_wav(samples, sample_rate, channels=1) -> bytes:
    """Encode float32 samples in [-1, 1] as 16-bit PCM WAV bytes"""
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
    buffer = io.BytesIO()
    with wave.open(buffer, 'wb') as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.tobytes())
    return buffer.getvalue()


class UploadedAudioRecognizer:
    """
    Capture backend fed by recorded clips (e.g. uploaded over HTTP).

    Each clip passed to `feed` while the recognizer is started is transcribed
    and reported as a single final result.
    """

    def __init__(self, model=DEFAULT_STT_MODEL, transcribe=transcribe_audio_verbose):
        self.model = model
        self._transcribe = transcribe
        self._callbacks = None

    @property
    def active(self):
        return self._callbacks is not None

    def start(self, on_result, on_error, on_end):
        self._callbacks = (on_result, on_error, on_end)

    def stop(self):
        callbacks, self._callbacks = self._callbacks, None
        if callbacks is not None:
            callbacks[2]()

    def feed(self, audio_bytes) -> Optional[SpeechResult]:
        if self._callbacks is None:
            logger.warning("Audio received while capture is not active - ignoring")
            return None

        on_result, on_error, _ = self._callbacks
        transcript, confidence = self._transcribe(audio_bytes, model=self.model)
        if not transcript:
            on_error("no-speech")
            return None

        result = SpeechResult(transcript=transcript, confidence=confidence, is_final=True)
        on_result(result)
        return result


class MicrophoneRecognizer:
    """
    Continuous microphone capture with interim and final transcripts.

    Audio blocks from a sounddevice input stream are gated by RMS energy.
    While speech continues, the utterance so far is transcribed every
    `interim_interval` seconds and reported as an interim result (confidence
    0). After `silence_duration` seconds of silence the whole utterance is
    transcribed once more and reported as a final result.
    """

    def __init__(self, sample_rate=16000, block_duration=0.1, energy_threshold=0.01,
                 silence_duration=0.8, interim_interval=1.5, max_utterance=30.0,
                 model=DEFAULT_STT_MODEL, transcribe=transcribe_audio_verbose):
        self.sample_rate = sample_rate
        self.block_size = int(sample_rate * block_duration)
        self.block_duration = block_duration
        self.energy_threshold = energy_threshold
        self.silence_duration = silence_duration
        self.interim_interval = interim_interval
        self.max_utterance = max_utterance
        self.model = model
        self._transcribe = transcribe

        self._blocks = queue.Queue()
        self._stop_event = threading.Event()
        self._stream = None
        self._worker = None

    def start(self, on_result, on_error, on_end):
        # PortAudio is only needed for local capture
        import sounddevice as sd

        self.stop()
        self._stop_event = threading.Event()
        self._blocks = queue.Queue()

        def audio_callback(indata, frames, time_info, status):
            if status:
                logger.debug(f"Input stream status: {status}")
            self._blocks.put(indata[:, 0].copy())

        self._stream = sd.InputStream(samplerate=self.sample_rate, channels=1, dtype='float32',
                                      blocksize=self.block_size, callback=audio_callback)
        self._stream.start()

        self._worker = threading.Thread(
            target=self._run, args=(self._stop_event, self._blocks, on_result, on_error, on_end),
            name="microphone-recognizer", daemon=True,
        )
        self._worker.start()
        logger.info("Listening on microphone...")

    def stop(self):
        self._stop_event.set()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning(f"Error closing input stream: {e}")
            self._stream = None
        if self._worker is not None and self._worker is not threading.current_thread():
            self._worker.join(timeout=2.0)
        self._worker = None

    def _run(self, stop_event, blocks, on_result, on_error, on_end):
        utterance = []
        silent_blocks = 0
        blocks_since_interim = 0
        silence_limit = max(1, int(self.silence_duration / self.block_duration))
        interim_every = max(1, int(self.interim_interval / self.block_duration))
        max_blocks = int(self.max_utterance / self.block_duration)

        try:
            while not stop_event.is_set():
                try:
                    block = blocks.get(timeout=0.2)
                except queue.Empty:
                    continue

                voiced = float(np.sqrt(np.mean(block ** 2))) >= self.energy_threshold
                if not utterance and not voiced:
                    continue

                utterance.append(block)
                silent_blocks = 0 if voiced else silent_blocks + 1
                blocks_since_interim += 1

                if silent_blocks >= silence_limit or len(utterance) >= max_blocks:
                    self._emit(np.concatenate(utterance), True, on_result)
                    utterance, silent_blocks, blocks_since_interim = [], 0, 0
                elif voiced and blocks_since_interim >= interim_every:
                    self._emit(np.concatenate(utterance), False, on_result)
                    blocks_since_interim = 0
        except Exception as e:
            logger.error(f"Microphone capture failed: {e}", exc_info=True)
            on_error(str(e))
        finally:
            on_end()

    def _emit(self, samples, is_final, on_result):
        transcript, confidence = self._transcribe(encode_wav(samples, self.sample_rate), model=self.model)
        if not transcript:
            return
        on_result(SpeechResult(transcript=transcript,
                               confidence=confidence if is_final else 0.0,
                               is_final=is_final))
