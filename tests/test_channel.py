"""
Tests for the half-duplex speech channel.
"""

import asyncio

import pytest
import pytest_asyncio

from src.dialog.channel import (
    ChannelEvent,
    SpeechChannel,
    StopReason,
    TimeoutPolicy,
    TranscriptMode,
    profile_for_route,
)
from src.dialog.errors import ErrorKind
from src.dialog.providers.base import SynthesisOutcome

from conftest import FakeSynthesizer, ScriptedRecognizer, wait_until

LONG = TimeoutPolicy(silence_timeout_ms=2000, no_speech_timeout_ms=2000)


@pytest_asyncio.fixture
async def channel(recognizer, synthesizer, config):
    ch = SpeechChannel(recognizer, synthesizer, config=config)
    yield ch
    ch.close()


class TestSupport:
    def test_missing_recognizer_is_unsupported(self, synthesizer, config):
        channel = SpeechChannel(None, synthesizer, config=config)
        assert not channel.recognition_supported
        assert channel.state.last_error == ErrorKind.UNSUPPORTED

    @pytest.mark.asyncio
    async def test_unsupported_listen_is_noop(self, synthesizer, config):
        channel = SpeechChannel(ScriptedRecognizer(available=False), synthesizer, config=config)
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE) is False
        assert not channel.state.listening


class TestRouteProfiles:
    def test_elder_routes(self, config):
        profile = profile_for_route("/register/details", config)
        assert profile.mode == TranscriptMode.ACCUMULATE
        assert profile.policy.silence_timeout_ms == config.elder_silence_timeout_ms
        assert profile_for_route("/login", config).mode == TranscriptMode.ACCUMULATE

    def test_quick_routes(self, config):
        profile = profile_for_route("/dashboard", config)
        assert profile.mode == TranscriptMode.REPLACE
        assert profile.policy.no_speech_timeout_ms == config.quick_no_speech_timeout_ms

    def test_default_policies(self):
        assert TimeoutPolicy.elder_friendly().silence_timeout_ms == 120
        assert TimeoutPolicy.quick_command().silence_timeout_ms == 40


class TestTranscriptModes:
    @pytest.mark.asyncio
    async def test_accumulate_appends_finals(self, channel, recognizer):
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)

        recognizer.push("nine eight")
        recognizer.push("seven six")
        await wait_until(lambda: channel.state.transcript_buffer == "nine eight seven six")

        channel.stop_listening()
        result = await channel.wait_for_stop()
        assert result.reason == StopReason.MANUAL
        assert result.transcript == "nine eight seven six"

    @pytest.mark.asyncio
    async def test_replace_keeps_latest_final(self, channel, recognizer):
        assert channel.start_listening(LONG, TranscriptMode.REPLACE)
        await wait_until(lambda: recognizer.active)

        recognizer.push("go")
        recognizer.push("go home")
        await wait_until(lambda: channel.state.transcript_buffer == "go home")

    @pytest.mark.asyncio
    async def test_interim_is_preview_only(self, channel, recognizer):
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)

        recognizer.push("nine", is_final=True)
        recognizer.push("eight sev", is_final=False)
        await wait_until(lambda: channel.state.interim == "eight sev")
        assert channel.state.transcript_buffer == "nine"
        assert channel.state.preview == "nine eight sev"

        channel.stop_listening()
        result = await channel.wait_for_stop()
        assert result.transcript == "nine"

    @pytest.mark.asyncio
    async def test_empty_final_does_not_clear_replace_buffer(self, channel, recognizer):
        assert channel.start_listening(LONG, TranscriptMode.REPLACE)
        await wait_until(lambda: recognizer.active)

        recognizer.push("help")
        recognizer.push("  ")
        await asyncio.sleep(0.01)
        assert channel.state.transcript_buffer == "help"


class TestTimers:
    @pytest.mark.asyncio
    async def test_silence_ends_cycle(self, channel, recognizer):
        policy = TimeoutPolicy(silence_timeout_ms=40, no_speech_timeout_ms=1000)
        assert channel.start_listening(policy, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)
        recognizer.push("hello")

        result = await asyncio.wait_for(channel.wait_for_stop(), timeout=1.0)
        assert result.reason == StopReason.SILENCE
        assert result.transcript == "hello"
        assert not channel.state.listening

    @pytest.mark.asyncio
    async def test_no_speech_ends_cycle(self, channel):
        policy = TimeoutPolicy(silence_timeout_ms=1000, no_speech_timeout_ms=30)
        assert channel.start_listening(policy, TranscriptMode.ACCUMULATE)

        result = await asyncio.wait_for(channel.wait_for_stop(), timeout=1.0)
        assert result.reason == StopReason.NO_SPEECH
        assert result.transcript == ""

    @pytest.mark.asyncio
    async def test_speech_rearms_silence(self, channel, recognizer):
        policy = TimeoutPolicy(silence_timeout_ms=120, no_speech_timeout_ms=1000)
        assert channel.start_listening(policy, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)

        for word in ("nine", "eight", "seven", "six"):
            recognizer.push(word)
            await asyncio.sleep(0.04)

        # 160ms have passed, but never 120ms without speech.
        assert channel.state.listening
        result = await asyncio.wait_for(channel.wait_for_stop(), timeout=1.0)
        assert result.reason == StopReason.SILENCE
        assert result.transcript == "nine eight seven six"

    @pytest.mark.asyncio
    async def test_speech_cancels_no_speech_timer(self, channel, recognizer):
        policy = TimeoutPolicy(silence_timeout_ms=150, no_speech_timeout_ms=40)
        assert channel.start_listening(policy, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)
        recognizer.push("hello", is_final=False)

        await asyncio.sleep(0.08)
        assert channel.state.listening

    @pytest.mark.asyncio
    async def test_stale_silence_timer_ignored_after_context_switch(self, channel, recognizer, config):
        short = TimeoutPolicy(silence_timeout_ms=40, no_speech_timeout_ms=1000)
        assert channel.start_listening(short, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)
        recognizer.push("old screen")
        await wait_until(lambda: channel.state.transcript_buffer == "old screen")

        channel.on_context_switch()
        await channel.wait_until_ready()

        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        await asyncio.sleep(0.08)
        assert channel.state.listening
        assert channel.state.transcript_buffer == ""


class TestHalfDuplex:
    @pytest.mark.asyncio
    async def test_speak_stops_listening(self, channel, recognizer, synthesizer):
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)

        outcome = await channel.speak("Please tell me your phone number.")

        assert outcome == SynthesisOutcome.COMPLETED
        assert channel.last_result.reason == StopReason.MANUAL
        assert recognizer.stopped >= 1
        assert synthesizer.spoken == ["Please tell me your phone number."]
        assert not channel.state.speaking

    @pytest.mark.asyncio
    async def test_no_listening_while_speaking(self, recognizer, config):
        synthesizer = FakeSynthesizer(delay=0.05)
        channel = SpeechChannel(recognizer, synthesizer, config=config)
        speak_task = asyncio.create_task(channel.speak("Hello"))
        await wait_until(lambda: channel.state.speaking)

        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE) is False
        assert not (channel.state.listening and channel.state.speaking)

        await speak_task
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        channel.close()

    @pytest.mark.asyncio
    async def test_second_start_is_ignored(self, channel, recognizer):
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE) is False
        await wait_until(lambda: recognizer.active)
        assert recognizer.started == 1

    @pytest.mark.asyncio
    async def test_new_speech_cancels_previous(self, recognizer, config):
        synthesizer = FakeSynthesizer(delay=0.2)
        channel = SpeechChannel(recognizer, synthesizer, config=config)
        first = asyncio.create_task(channel.speak("first"))
        await wait_until(lambda: channel.state.speaking)

        synthesizer.delay = 0.0
        second = await channel.speak("second")

        assert second == SynthesisOutcome.COMPLETED
        assert await first == SynthesisOutcome.CANCELLED
        assert synthesizer.cancelled == 1
        assert not channel.state.speaking
        channel.close()


class TestSynthesisOutcomes:
    @pytest.mark.asyncio
    async def test_blocked(self, recognizer, config):
        channel = SpeechChannel(recognizer, FakeSynthesizer(SynthesisOutcome.BLOCKED), config=config)
        outcome = await channel.speak("Hello")
        assert outcome == SynthesisOutcome.BLOCKED
        assert channel.state.last_error == ErrorKind.SYNTHESIS_BLOCKED
        assert not channel.state.speaking

    @pytest.mark.asyncio
    async def test_provider_exception_is_error(self, recognizer, config):
        synthesizer = FakeSynthesizer()
        synthesizer.raise_error = RuntimeError("audio device gone")
        channel = SpeechChannel(recognizer, synthesizer, config=config)
        assert await channel.speak("Hello") == SynthesisOutcome.ERROR
        assert not channel.state.speaking

    @pytest.mark.asyncio
    async def test_empty_text(self, channel, synthesizer):
        assert await channel.speak("  ") == SynthesisOutcome.COMPLETED
        assert synthesizer.spoken == []

    @pytest.mark.asyncio
    async def test_speaks_in_channel_locale(self, recognizer, synthesizer, config):
        channel = SpeechChannel(recognizer, synthesizer, locale="mr", config=config)
        await channel.speak("नमस्कार")
        assert synthesizer.locales == ["mr-IN"]


class TestContextSwitch:
    @pytest.mark.asyncio
    async def test_resets_and_starts_airlock(self, channel, recognizer):
        events = []
        channel.subscribe(lambda event, data: events.append(event))

        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)
        recognizer.push("half an answer")
        await wait_until(lambda: channel.state.transcript_buffer)

        channel.on_context_switch()

        assert channel.last_result.reason == StopReason.CANCELLED
        assert channel.state.transcript_buffer == ""
        assert channel.state.processing_cooldown
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE) is False

        await asyncio.wait_for(channel.wait_until_ready(), timeout=1.0)
        assert not channel.state.processing_cooldown
        assert ChannelEvent.COOLDOWN_ENDED in events
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)

    @pytest.mark.asyncio
    async def test_cancels_speech(self, recognizer, config):
        synthesizer = FakeSynthesizer(delay=1.0)
        channel = SpeechChannel(recognizer, synthesizer, config=config)
        speak_task = asyncio.create_task(channel.speak("A long sentence"))
        await wait_until(lambda: channel.state.speaking)

        generation = channel.generation
        channel.on_context_switch()

        assert await asyncio.wait_for(speak_task, timeout=1.0) == SynthesisOutcome.CANCELLED
        assert channel.generation == generation + 1
        assert not channel.state.speaking
        channel.close()


class TestInputPaths:
    @pytest.mark.asyncio
    async def test_recognition_error(self, channel, recognizer):
        events = []
        channel.subscribe(lambda event, data: events.append((event, data)))
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)

        recognizer.fail("network")
        result = await asyncio.wait_for(channel.wait_for_stop(), timeout=1.0)

        assert result.reason == StopReason.ERROR
        assert result.error == "network"
        assert channel.state.last_error == ErrorKind.RECOGNITION_FAILED
        assert any(event == ChannelEvent.ERROR for event, _ in events)

    @pytest.mark.asyncio
    async def test_recognizer_ends_stream(self, channel, recognizer):
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)
        recognizer.finish()
        result = await asyncio.wait_for(channel.wait_for_stop(), timeout=1.0)
        assert result.reason == StopReason.ENDED

    @pytest.mark.asyncio
    async def test_typed_input(self, channel):
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        assert channel.submit_text(" 9876543210 ")
        result = await channel.wait_for_stop()
        assert result.reason == StopReason.TYPED
        assert result.transcript == "9876543210"

    @pytest.mark.asyncio
    async def test_typed_input_when_idle_is_dropped(self, channel):
        assert channel.submit_text("hello") is False

    @pytest.mark.asyncio
    async def test_subscriber_errors_are_contained(self, channel, recognizer):
        def broken(event, data):
            raise RuntimeError("boom")

        channel.subscribe(broken)
        assert channel.start_listening(LONG, TranscriptMode.ACCUMULATE)
        await wait_until(lambda: recognizer.active)
        recognizer.push("still works")
        await wait_until(lambda: channel.state.transcript_buffer == "still works")

    @pytest.mark.asyncio
    async def test_unsubscribe(self, channel):
        events = []
        unsubscribe = channel.subscribe(lambda event, data: events.append(event))
        unsubscribe()
        await channel.speak("Hello")
        assert events == []
