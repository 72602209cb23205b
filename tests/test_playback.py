# =============================================================================
# RealtyVoice Agent - Playback Tests
# =============================================================================
"""
Tests for the playback scheduler and its fallback chain.

Run with: pytest tests/test_playback.py -v
"""

import sys
import asyncio
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.errors import PlaybackError
from core.playback import PlaybackMode, PlaybackScheduler, decode_audio

from conftest import FakeOutput, FakeSpeechEngine, wait_for, wav_bytes

TEXT = "Two flats match your search"


def assert_monotonic(indices):
    assert indices == sorted(indices)
    assert len(indices) == len(set(indices))


@pytest.fixture
def make_scheduler(graph, frames):
    def _make(speech_engine=None, output_factory=FakeOutput):
        return PlaybackScheduler(
            graph,
            frames,
            speech_engine=speech_engine,
            output_factory=output_factory,
            reveal_ms_per_char=1,
            min_reveal_ms=20,
        )
    return _make


class TestDecode:
    """Test audio decoding."""

    def test_decodes_wav(self):
        pcm, sample_rate = decode_audio(wav_bytes(0.5))
        assert sample_rate == 16000
        assert pcm.shape == (8000, 1)

    def test_garbage_raises(self):
        with pytest.raises(PlaybackError):
            decode_audio(b"definitely not audio")


class TestAudioMode:
    """Test playback of synthesized audio."""

    @pytest.mark.asyncio
    async def test_index_follows_playhead(self, make_scheduler, graph):
        indices = []
        session = make_scheduler().start(TEXT, wav_bytes(1.0), indices.append)
        output = FakeOutput.instances[0]

        assert session.mode == PlaybackMode.AUDIO
        assert indices == [0]
        assert graph.is_connected(output)
        assert output.tap == graph.playback_analyser.push

        output.seek(0.5)
        await wait_for(lambda: indices[-1] == 2)

        output.finish()
        assert await asyncio.wait_for(session.done, 2) is True

        assert_monotonic(indices)
        assert indices[-1] == session.word_count == 5
        assert indices.count(5) == 1
        assert output.stop_count == 1
        assert not graph.is_connected(output)

    @pytest.mark.asyncio
    async def test_index_never_decreases(self, make_scheduler):
        indices = []
        session = make_scheduler().start(TEXT, wav_bytes(1.0), indices.append)
        output = FakeOutput.instances[0]

        output.seek(0.7)
        await wait_for(lambda: indices[-1] == 3)
        output.seek(0.1)
        await asyncio.sleep(0.02)
        assert indices[-1] == 3

        output.finish()
        await asyncio.wait_for(session.done, 2)
        assert_monotonic(indices)

    @pytest.mark.asyncio
    async def test_close_stops_immediately(self, make_scheduler, graph, frames):
        indices = []
        session = make_scheduler().start(TEXT, wav_bytes(1.0), indices.append)
        output = FakeOutput.instances[0]

        assert session.close() is True
        assert session.closed
        assert session.done.result() is False
        assert output.stop_count == 1
        assert not graph.is_connected(output)
        assert frames.pending == 0
        assert session.close() is False

        output.finish()
        await asyncio.sleep(0.02)
        assert session.word_count not in indices


class TestFallbackChain:
    """Test the audio -> speech engine -> timed reveal chain."""

    @pytest.mark.asyncio
    async def test_no_audio_uses_engine(self, make_scheduler):
        engine = FakeSpeechEngine()
        indices = []
        session = make_scheduler(speech_engine=engine).start(TEXT, None, indices.append)

        assert session.mode == PlaybackMode.SPEECH_ENGINE
        assert await asyncio.wait_for(session.done, 2) is True
        assert engine.spoken == [TEXT]
        assert indices == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_output_failure_uses_engine(self, make_scheduler, graph):
        engine = FakeSpeechEngine()
        scheduler = make_scheduler(
            speech_engine=engine,
            output_factory=lambda pcm, sr: FakeOutput(pcm, sr, fail=True),
        )
        session = scheduler.start(TEXT, wav_bytes(), lambda i: None)

        assert session.mode == PlaybackMode.SPEECH_ENGINE
        assert not graph.is_connected(FakeOutput.instances[0])
        assert await asyncio.wait_for(session.done, 2) is True

    @pytest.mark.asyncio
    async def test_undecodable_audio_reveals_on_timer(self, make_scheduler):
        indices = []
        session = make_scheduler().start(TEXT, b"garbage", indices.append)

        assert session.mode == PlaybackMode.TIMED_REVEAL
        assert await asyncio.wait_for(session.done, 2) is True
        assert indices == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_engine_error_reveals_on_timer(self, make_scheduler):
        indices = []
        session = make_scheduler(speech_engine=FakeSpeechEngine(fail=True)).start(TEXT, None, indices.append)

        assert await asyncio.wait_for(session.done, 2) is True
        assert session.mode == PlaybackMode.TIMED_REVEAL
        assert indices[-1] == 5
        assert_monotonic(indices)

    @pytest.mark.asyncio
    async def test_close_stops_engine_and_ignores_late_events(self, make_scheduler):
        engine = FakeSpeechEngine(auto=False)
        indices = []
        session = make_scheduler(speech_engine=engine).start(TEXT, None, indices.append)
        on_word, on_end, _ = engine.callbacks

        on_word()
        session.close()
        on_word()
        on_end()

        assert engine.stop_count == 1
        assert indices == [0]
        assert session.done.result() is False


class TestTimedReveal:
    """Test timed reveal pacing."""

    @pytest.mark.asyncio
    async def test_step_uses_minimum_duration(self, make_scheduler):
        session = make_scheduler().start("a b", None, lambda i: None)
        assert session.reveal_step_seconds == pytest.approx(0.01)
        session.close()

    @pytest.mark.asyncio
    async def test_empty_text_completes_at_once(self, make_scheduler):
        indices = []
        session = make_scheduler().start("   ", None, indices.append)

        assert session.done.done()
        assert session.done.result() is True
        assert indices == [0]
