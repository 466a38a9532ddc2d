"""
Tests for the live transcript buffer.
"""
import threading
import pytest

from meetbot.schemas import TranscriptSegment
from meetbot.services.transcript_buffer import LiveTranscriptBuffer


def seg(speaker, text, partial=False, ts="1.0s"):
    return TranscriptSegment(speaker=speaker, text=text, timestamp=ts, is_partial=partial)


@pytest.fixture
def buffer():
    return LiveTranscriptBuffer(max_age_seconds=7200)


@pytest.mark.unit
class TestLiveTranscriptBuffer:
    """Test partial collapsing, reads and eviction."""

    def test_partials_from_same_speaker_collapse(self, buffer):
        buffer.apply("bot-1", seg("Ana", "Hel", partial=True))
        buffer.apply("bot-1", seg("Ana", "Hello every", partial=True))
        buffer.apply("bot-1", seg("Ana", "Hello everyone"))

        segments = buffer.read("bot-1")
        assert [(s.text, s.is_partial) for s in segments] == [("Hello everyone", False)]

    def test_final_after_final_appends(self, buffer):
        buffer.apply("bot-1", seg("Ana", "First"))
        buffer.apply("bot-1", seg("Ana", "Second"))
        assert [s.text for s in buffer.read("bot-1")] == ["First", "Second"]

    def test_segment_count_bounded_by_speaker_turns(self, buffer):
        turns = [("Ana", 4), ("Rui", 3), ("Ana", 2)]
        for speaker, partials in turns:
            for i in range(partials):
                buffer.apply("bot-1", seg(speaker, "w" * (i + 1), partial=True))
            buffer.apply("bot-1", seg(speaker, "final"))

        assert len(buffer.read("bot-1")) == len(turns)

    def test_only_trailing_segment_may_be_partial(self, buffer):
        buffer.apply("bot-1", seg("Ana", "Half a sent", partial=True))
        buffer.apply("bot-1", seg("Rui", "Interrupt", partial=True))
        buffer.apply("bot-1", seg("Ana", "Back", partial=True))

        segments = buffer.read("bot-1")
        assert [s.speaker for s in segments] == ["Ana", "Rui", "Ana"]
        assert [s.is_partial for s in segments] == [False, False, True]

    def test_read_returns_copy(self, buffer):
        buffer.apply("bot-1", seg("Ana", "Hi"))
        buffer.read("bot-1").clear()
        assert len(buffer.read("bot-1")) == 1

    def test_bots_are_isolated(self, buffer):
        buffer.apply("bot-1", seg("Ana", "One"))
        buffer.apply("bot-2", seg("Rui", "Two"))
        assert [s.text for s in buffer.read("bot-1")] == ["One"]
        assert [s.text for s in buffer.read("bot-2")] == ["Two"]

    def test_unknown_bot_reads_empty(self, buffer):
        assert buffer.read("missing") == []
        assert buffer.last_updated("missing") is None

    def test_evict(self, buffer):
        buffer.apply("bot-1", seg("Ana", "Hi"))
        assert buffer.evict("bot-1") is True
        assert buffer.evict("bot-1") is False
        assert buffer.read("bot-1") == []

    def test_replace(self, buffer):
        buffer.apply("bot-1", seg("Ana", "Stale", partial=True))
        buffer.replace("bot-1", [seg("Ana", "A"), seg("Rui", "B")])
        assert [s.text for s in buffer.read("bot-1")] == ["A", "B"]

    def test_sweep_removes_idle_entries(self, buffer):
        buffer.apply("bot-old", seg("Ana", "Old"))
        buffer.apply("bot-new", seg("Rui", "New"))
        now = buffer.last_updated("bot-new")
        buffer._entries["bot-old"].last_updated = now - 7201

        assert buffer.sweep(now=now) == 1
        assert buffer.read("bot-old") == []
        assert len(buffer) == 1

    def test_concurrent_appends(self, buffer):
        def worker(speaker):
            for i in range(200):
                buffer.apply("bot-1", seg(speaker, str(i)))

        threads = [threading.Thread(target=worker, args=(f"S{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(buffer.read("bot-1")) == 800
