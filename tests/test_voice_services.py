import threading
from unittest.mock import MagicMock

import pytest

from physio.errors import SpeechUnsupported, SynthesisFailed
from physio.models import SpeechResult
from physio.voice_services import SpeechEventChannel, Voice, VoiceServices, VoiceSettings

from conftest import FakeRecognizer, FakeSynthesizer


def result(text, final=False, confidence=0.0):
    return SpeechResult(transcript=text, confidence=confidence, is_final=final)


class TestCapabilities:
    def test_supported_needs_both_primitives(self, fake_recognizer, fake_synthesizer):
        assert VoiceServices(fake_recognizer, fake_synthesizer).is_supported() is True
        assert VoiceServices(fake_recognizer, None).is_supported() is False
        assert VoiceServices(None, fake_synthesizer).is_supported() is False

    def test_capabilities_report(self, voice):
        assert voice.get_capabilities() == {
            'speech_recognition': True,
            'speech_synthesis': True,
            'voices': 2,
        }

    def test_roster_failure_is_empty(self):
        synthesizer = FakeSynthesizer()
        synthesizer.get_voices = MagicMock(side_effect=RuntimeError("not loaded"))
        voice = VoiceServices(None, synthesizer)

        assert voice.get_available_voices() == []


class TestCapture:
    def test_start_without_recognizer(self):
        assert VoiceServices().start_listening(lambda r: None) is False

    def test_results_reach_callback(self, voice, fake_recognizer):
        received = []
        assert voice.start_listening(received.append) is True

        fake_recognizer.emit("my back", is_final=False)
        fake_recognizer.emit("my back hurts", confidence=0.92, is_final=True)

        assert [r.transcript for r in received] == ["my back", "my back hurts"]
        assert received[1].confidence == 0.92
        assert voice.is_listening_active() is True

    def test_second_start_stops_first_session(self, voice, fake_recognizer):
        first, second = [], []
        voice.start_listening(first.append)
        stale_on_result = fake_recognizer.callbacks[0]

        voice.start_listening(second.append)
        stale_on_result(result("late result", final=True))
        fake_recognizer.emit("fresh result", is_final=True)

        assert fake_recognizer.stop_calls == 1
        assert first == []
        assert [r.transcript for r in second] == ["fresh result"]

    def test_stop_is_idempotent(self, voice, fake_recognizer):
        received = []
        voice.start_listening(received.append)
        stale_on_result = fake_recognizer.callbacks[0]

        voice.stop_listening()
        voice.stop_listening()
        stale_on_result(result("after stop", final=True))

        assert voice.is_listening_active() is False
        assert fake_recognizer.stop_calls == 1
        assert received == []

    def test_capture_error_ends_session(self, voice, fake_recognizer):
        voice.start_listening(lambda r: None)
        fake_recognizer.fail("no-speech")

        assert voice.is_listening_active() is False

    def test_recognizer_start_failure(self):
        voice = VoiceServices(FakeRecognizer(fail_on_start=True), FakeSynthesizer())

        assert voice.start_listening(lambda r: None) is False
        assert voice.is_listening_active() is False


class TestSynthesis:
    def test_speak_resolves_on_end(self, voice, fake_synthesizer):
        future = voice.speak("Let's begin with a gentle stretch.")

        assert future.result(timeout=1) is None
        assert fake_synthesizer.spoken[0].text == "Let's begin with a gentle stretch."
        assert voice.is_speaking_active() is False

    def test_speak_without_synthesizer(self):
        future = VoiceServices(FakeRecognizer(), None).speak("hello")

        with pytest.raises(SpeechUnsupported):
            future.result(timeout=1)

    def test_runtime_error_fails_future(self):
        voice = VoiceServices(None, FakeSynthesizer(error="audio-busy"))

        with pytest.raises(SynthesisFailed, match="audio-busy"):
            voice.speak("hello").result(timeout=1)

    def test_new_utterance_cancels_current(self):
        synthesizer = FakeSynthesizer(auto_finish=False)
        voice = VoiceServices(None, synthesizer)

        first = voice.speak("first")
        second = voice.speak("second")

        with pytest.raises(SynthesisFailed):
            first.result(timeout=1)
        assert synthesizer.cancel_calls == 1
        assert second.done() is False

        synthesizer.finish()
        assert second.result(timeout=1) is None

    def test_late_end_of_cancelled_utterance_is_ignored(self):
        synthesizer = FakeSynthesizer(auto_finish=False)
        voice = VoiceServices(None, synthesizer)
        voice.speak("first")
        stale = synthesizer.current

        second = voice.speak("second")
        stale.on_end()

        assert second.done() is False
        assert voice.is_speaking_active() is True

    def test_settings_are_clamped(self, voice, fake_synthesizer):
        voice.speak("hello", VoiceSettings(rate=5.0, pitch=0.1, volume=1.5)).result(timeout=1)

        utterance = fake_synthesizer.spoken[0]
        assert utterance.rate == 2.0
        assert utterance.pitch == 0.5
        assert utterance.volume == 1.0

    def test_controls_are_noops_when_idle(self, voice, fake_synthesizer):
        voice.pause_speaking()
        voice.resume_speaking()
        voice.stop_speaking()

        assert fake_synthesizer.pause_calls == 0
        assert fake_synthesizer.resume_calls == 0
        assert fake_synthesizer.cancel_calls == 0

    def test_pause_resume_stop_current(self):
        synthesizer = FakeSynthesizer(auto_finish=False)
        voice = VoiceServices(None, synthesizer)
        future = voice.speak("a long explanation")

        voice.pause_speaking()
        voice.resume_speaking()
        voice.stop_speaking()

        assert synthesizer.pause_calls == 1
        assert synthesizer.resume_calls == 1
        assert synthesizer.cancel_calls == 1
        with pytest.raises(SynthesisFailed, match="interrupted"):
            future.result(timeout=1)


class TestVoiceSelection:
    def test_named_voice(self, voice):
        voice.speak("hi", VoiceSettings(voice="Atlas-PlayAI")).result(timeout=1)
        assert voice.synthesizer.spoken[0].voice.name == "Atlas-PlayAI"

    def test_missing_voice_falls_back_to_english_female(self, voice):
        voice.speak("hi", VoiceSettings(voice="Nobody")).result(timeout=1)
        assert voice.synthesizer.spoken[0].voice.name == "Celeste-PlayAI"

    def test_fallback_to_first_voice(self):
        synthesizer = FakeSynthesizer(voices=[Voice("Thunder-PlayAI", "en-US", "male")])
        VoiceServices(None, synthesizer).speak("hi").result(timeout=1)
        assert synthesizer.spoken[0].voice.name == "Thunder-PlayAI"

    def test_empty_roster_uses_platform_default(self):
        synthesizer = FakeSynthesizer(voices=[])
        VoiceServices(None, synthesizer).speak("hi").result(timeout=1)
        assert synthesizer.spoken[0].voice is None


class TestSpeechEventChannel:
    def test_latest_interim_wins(self):
        channel = SpeechEventChannel()
        channel.publish(result("my"))
        channel.publish(result("my back"))

        assert channel.latest_interim.transcript == "my back"
        assert channel.drain_finals() == []

    def test_finals_queue_in_order_and_clear_interim(self):
        channel = SpeechEventChannel()
        channel.publish(result("first", final=True))
        channel.publish(result("sec"))
        channel.publish(result("second", final=True))

        assert channel.latest_interim is None
        assert [r.transcript for r in channel.drain_finals()] == ["first", "second"]
        assert channel.drain_finals() == []

    def test_next_final_waits_for_publisher(self):
        channel = SpeechEventChannel()
        timer = threading.Timer(0.05, channel.publish, args=(result("done", final=True),))
        timer.start()

        received = channel.next_final(timeout=2)
        timer.join()

        assert received.transcript == "done"

    def test_next_final_timeout(self):
        assert SpeechEventChannel().next_final(timeout=0.01) is None


def test_stop_speaking_survives_cancel_error():
    synthesizer = FakeSynthesizer(auto_finish=False)
    synthesizer.cancel = MagicMock(side_effect=RuntimeError("device gone"))
    voice = VoiceServices(None, synthesizer)
    future = voice.speak("a long explanation")

    voice.stop_speaking()

    assert voice.is_speaking_active() is False
    with pytest.raises(SynthesisFailed, match="interrupted"):
        future.result(timeout=1)
