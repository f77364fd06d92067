from app.services.transcript_reconciler import TranscriptReconciler
from app.services.transcription.base import TranscriptEvent


def events(*items):
    """Build sequenced events from (kind, text, speaker) tuples."""
    return [
        TranscriptEvent(is_partial=(kind == "partial"), text=text, speaker_tag=speaker, sequence=i)
        for i, (kind, text, speaker) in enumerate(items, start=1)
    ]


def feed(reconciler, evts):
    for event in evts:
        reconciler.push(event)
    return reconciler


def test_two_speakers_produce_two_segments():
    reconciler = feed(
        TranscriptReconciler(),
        events(
            ("partial", "hel", "A"),
            ("final", "hello there", "A"),
            ("partial", "ye", "B"),
            ("final", "yes", "B"),
        ),
    )
    assert reconciler.full_transcript() == "A: hello there\nB: yes"


def test_partial_then_identical_final_matches_final_alone():
    with_partial = feed(TranscriptReconciler(), events(("partial", "hello", "A"), ("final", "hello", "A")))
    final_only = feed(TranscriptReconciler(), events(("final", "hello", "A")))
    assert with_partial.full_transcript() == final_only.full_transcript() == "A: hello"


def test_latest_event_wins_within_a_speaker_run():
    reconciler = feed(
        TranscriptReconciler(),
        events(("final", "first sentence", "A"), ("partial", "second", "A"), ("final", "second sentence", "A")),
    )
    assert reconciler.full_transcript() == "A: second sentence"
    assert len(reconciler.segments()) == 1


def test_append_policy_keeps_every_final_of_a_speaker_run():
    reconciler = feed(
        TranscriptReconciler("append"),
        events(
            ("final", "first sentence.", "A"),
            ("partial", "second", "A"),
            ("final", "second sentence.", "A"),
            ("final", "over to you", "B"),
        ),
    )
    assert reconciler.full_transcript() == "A: first sentence. second sentence.\nB: over to you"


def test_append_policy_shows_partial_after_committed_text():
    reconciler = feed(TranscriptReconciler("append"), events(("final", "one.", None), ("partial", "tw", None)))
    assert reconciler.open_segment.text == "one. tw"


def test_sealed_segments_are_never_changed():
    reconciler = feed(TranscriptReconciler(), events(("final", "alpha", "A"), ("final", "beta", "B")))
    sealed = reconciler.sealed_segments
    reconciler.push(TranscriptEvent(False, "gamma", "A", 3))
    assert sealed[0].text == "alpha"
    assert [s.text for s in reconciler.sealed_segments] == ["alpha", "beta"]
    assert all(s.is_final for s in reconciler.sealed_segments)


def test_at_most_one_open_segment():
    reconciler = feed(
        TranscriptReconciler(),
        events(("partial", "a", "A"), ("partial", "b", "B"), ("partial", "c", "C")),
    )
    assert reconciler.open_segment.speaker == "C"
    assert [s.speaker for s in reconciler.sealed_segments] == ["A", "B"]


def test_unset_speaker_tags_share_a_segment_with_default_label():
    reconciler = feed(TranscriptReconciler(), events(("partial", "so", None), ("final", "so today", None)))
    assert reconciler.full_transcript() == "Speaker: so today"


def test_out_of_order_events_wait_for_the_gap():
    first, second, third = events(("partial", "hi", "A"), ("final", "hi all", "A"), ("final", "hey", "B"))
    reconciler = TranscriptReconciler()

    assert reconciler.push(third) == []
    assert reconciler.push(first) == [first]
    assert reconciler.push(second) == [second, third]
    assert reconciler.full_transcript() == "A: hi all\nB: hey"


def test_stale_and_duplicate_sequences_are_ignored():
    first, second = events(("final", "right", "A"), ("final", "later", "B"))
    reconciler = TranscriptReconciler()
    reconciler.push(first)
    reconciler.push(second)

    assert reconciler.push(TranscriptEvent(False, "wrong", "A", 1)) == []
    assert reconciler.full_transcript() == "A: right\nB: later"


def test_drain_applies_held_events_despite_gap():
    reconciler = TranscriptReconciler()
    reconciler.push(TranscriptEvent(False, "orphan", "A", 3))
    assert reconciler.full_transcript() == ""

    applied = reconciler.drain()
    assert [e.sequence for e in applied] == [3]
    assert reconciler.full_transcript() == "A: orphan"


def test_has_final_text_ignores_open_partials():
    reconciler = TranscriptReconciler()
    reconciler.push(TranscriptEvent(True, "maybe", "A", 1))
    assert not reconciler.has_final_text()
    reconciler.push(TranscriptEvent(False, "maybe not", "A", 2))
    assert reconciler.has_final_text()


def test_final_text_survives_a_later_partial_from_the_same_speaker():
    reconciler = feed(TranscriptReconciler(), events(("final", "hello there", "A"), ("partial", "how are", "A")))

    assert reconciler.open_segment.is_final is False
    assert reconciler.has_final_text()
    assert reconciler.full_transcript() == "A: how are"
