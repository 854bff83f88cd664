import pytest

from errors import MalformedScoreError
from models import ControlChange, NoteOff, NoteOn, PedalChange, Score, ScoreNote, ScoreTrack
from timeline import AUTO_STOP_DELAY, PlaybackContext, Timeline, build_events, order_events


@pytest.fixture
def timeline(piano):
    return Timeline(piano)


def strikes(timeline, tag="C4v"):
    return timeline.piano.backend.tagged(tag)


def test_note_released_at_note_off(timeline):
    timeline.schedule([NoteOn(0.0, 60, 0.8), NoteOff(1.0, 60)])
    timeline.start()
    timeline.run()
    [main] = strikes(timeline)
    assert main.time == 0.0
    assert main.stop_time == 1.0


def test_pedal_holds_note_until_pedal_up(timeline):
    timeline.schedule([NoteOn(0.0, 60), PedalChange(0.5, 0.8), NoteOff(1.0, 60), PedalChange(2.0, 0)])
    timeline.start()
    assert timeline.advance_to(1.0) == 3
    [main] = strikes(timeline)
    assert main.stop_time is None
    assert timeline.piano.voices.sustained
    timeline.advance_to(2.0)
    assert main.stop_time == 2.0


def test_pedal_change_wins_a_tie_with_note_off(timeline):
    # the pedal engages at the same instant the key is let go, so the note keeps ringing
    timeline.schedule([NoteOn(0.0, 60), NoteOff(1.0, 60), PedalChange(1.0, 1.0), PedalChange(3.0, 0.0)])
    assert [type(e) for e in timeline.events] == [NoteOn, PedalChange, NoteOff, PedalChange]
    timeline.start()
    timeline.advance_to(1.0)
    [main] = strikes(timeline)
    assert main.stop_time is None
    timeline.run()
    assert main.stop_time == 3.0


def test_out_of_order_events_are_rejected(timeline):
    with pytest.raises(MalformedScoreError):
        timeline.schedule([NoteOn(1.0, 60), NoteOff(0.5, 60)])


@pytest.mark.parametrize("event", [NoteOn(float("nan"), 60), NoteOn(-1.0, 60), NoteOn(0.0, 60, None), "C4"])
def test_invalid_events_are_rejected(event):
    with pytest.raises(MalformedScoreError):
        order_events([event])


def test_origin_offsets_trigger_times(timeline):
    timeline.schedule([NoteOn(0.25, 60), NoteOff(0.75, 60)])
    timeline.start(origin=10.0)
    timeline.run()
    [main] = strikes(timeline)
    assert (main.time, main.stop_time) == (10.25, 10.75)


def test_auto_stop_after_duration(timeline):
    stopped = []
    timeline.on_stop(lambda: stopped.append(timeline.context.position))
    timeline.schedule([NoteOn(0.0, 60), NoteOff(1.0, 60)])
    timeline.start()
    assert timeline.is_running
    timeline.advance_to(1.0)
    assert timeline.is_running
    timeline.advance_to(1.0 + AUTO_STOP_DELAY)
    assert not timeline.is_running
    assert stopped == [0.0]
    assert timeline.context.state == 'stopped'
    assert timeline.pending == 0
    assert len(timeline.events) == 2


def test_auto_stop_silences_hanging_notes(timeline):
    timeline.schedule([NoteOn(0.0, 60)], duration=2.0)
    timeline.start()
    timeline.run()
    [main] = strikes(timeline)
    assert main.stop_time == pytest.approx(2.0 + AUTO_STOP_DELAY)


def test_cancel_drops_pending_effects(timeline):
    timeline.schedule([NoteOn(0.0, 60), NoteOff(1.0, 60), NoteOn(2.0, 64), NoteOff(3.0, 64)])
    timeline.start()
    timeline.advance_to(0.5)
    timeline.cancel()
    assert timeline.pending == 0
    assert timeline.events == []
    assert timeline.context.duration == 0.0
    assert timeline.run() == 0
    assert strikes(timeline, "Ds4v") == []
    assert timeline.piano.voices.active_count == 0


def test_schedule_replaces_previous_events(timeline):
    timeline.schedule([NoteOn(0.0, 60), NoteOff(1.0, 60)])
    timeline.schedule([NoteOn(0.0, 63), NoteOff(1.0, 63)])
    timeline.start()
    timeline.run()
    assert strikes(timeline) == []
    assert len(strikes(timeline, "Ds4v")) == 1


def test_stop_keeps_events_for_replay(timeline):
    timeline.schedule([NoteOn(0.0, 60), NoteOff(1.0, 60)])
    timeline.start()
    timeline.advance_to(0.5)
    timeline.stop(0.5)
    assert timeline.piano.voices.active_count == 0
    timeline.start(origin=5.0)
    timeline.run()
    first, second = strikes(timeline)
    assert first.stop_time == 0.5
    assert (second.time, second.stop_time) == (5.0, 6.0)


def test_start_from_offset_skips_earlier_events(timeline):
    timeline.schedule([NoteOn(0.0, 60), NoteOff(1.0, 60), NoteOn(2.0, 63), NoteOff(3.0, 63)])
    timeline.start(origin=0.0, offset=1.5)
    timeline.run()
    assert strikes(timeline) == []
    [main] = strikes(timeline, "Ds4v")
    assert (main.time, main.stop_time) == (0.5, 1.5)


def test_seek_silences_and_rearms(timeline):
    timeline.schedule([NoteOn(0.0, 60), NoteOn(3.0, 63), NoteOff(3.5, 63), NoteOff(4.0, 60)])
    timeline.start()
    timeline.advance_to(1.0)
    timeline.seek(3.0)
    [held] = strikes(timeline)
    assert held.stop_time == 1.0
    timeline.run()
    assert len(strikes(timeline, "Ds4v")) == 1


def test_note_off_without_note_is_ignored(timeline, caplog):
    timeline.schedule([NoteOff(0.5, 60)])
    timeline.start()
    timeline.run()
    assert timeline.piano.backend.tagged("C4v") == []
    assert "no open note" in caplog.text


def _score(notes, sustain=(), tempos=(96.0,)):
    track = ScoreTrack("Piano", [ScoreNote(*n) for n in notes],
                       {64: [ControlChange(t, v) for t, v in sustain]})
    return Score([ScoreTrack("Empty"), track], list(tempos))


def test_load_score_uses_first_playable_track(timeline):
    timeline.load_score(_score([(60, 0.8, 0.0, 1.0), (63, 0.5, 1.0, 0.5)], sustain=[(2.0, 0)]))
    assert timeline.context.bpm == 96.0
    assert timeline.context.duration == 2.0
    timeline.start()
    timeline.run()
    [main] = strikes(timeline)
    assert main.stop_time == 1.0
    assert strikes(timeline, "Ds4v7")


def test_load_score_without_notes_keeps_previous_timeline(timeline):
    timeline.load_score(_score([(60, 0.8, 0.0, 1.0)]))
    events = timeline.events
    context = PlaybackContext(**vars(timeline.context))
    with pytest.raises(MalformedScoreError, match="No playable tracks"):
        timeline.load_score(Score([ScoreTrack("Empty")], [140.0]))
    assert timeline.events == events
    assert timeline.context == context


def test_build_events_orders_offs_before_ons():
    track = ScoreTrack("Piano", [ScoreNote(60, 0.8, 0.0, 1.0), ScoreNote(60, 0.6, 1.0, 1.0)],
                       {64: [ControlChange(1.0, 127)]})
    events = build_events(track)
    assert events == [NoteOn(0.0, 60, 0.8), PedalChange(1.0, 1.0), NoteOff(1.0, 60),
                      NoteOn(1.0, 60, 0.6), NoteOff(2.0, 60)]


def test_restruck_note_in_score_releases_first_strike(timeline):
    timeline.load_score(_score([(60, 0.8, 0.0, 1.0), (60, 0.8, 1.0, 1.0)]))
    timeline.start()
    timeline.run()
    first, second = strikes(timeline)
    assert first.stop_time == 1.0
    assert second.stop_time == 2.0


@pytest.mark.parametrize("raw,engaged", [(0, False), (1, False), (63, False), (64, True), (127, True)])
def test_sustain_controller_values_are_normalized(timeline, raw, engaged):
    timeline.load_score(_score([(60, 0.8, 0.0, 1.0)], sustain=[(0.5, raw)]))
    timeline.start()
    timeline.advance_to(0.5)
    assert timeline.piano.pedal_controller.engaged is engaged


def test_lifting_pedal_through_low_values_stays_released(timeline):
    timeline.load_score(_score([(60, 0.8, 0.0, 1.5)],
                               sustain=[(0.5, 127), (1.0, 30), (1.2, 1), (3.0, 0)]))
    timeline.start()
    timeline.run()
    [main] = strikes(timeline)
    assert main.stop_time == 1.5
    assert len(timeline.piano.backend.tagged("pedalD")) == 1


def test_unnormalized_pedal_value_is_rejected():
    with pytest.raises(MalformedScoreError):
        order_events([PedalChange(0.0, 127)])


def test_empty_timeline_stops_itself(timeline):
    stopped = []
    timeline.on_stop(lambda: stopped.append(True))
    timeline.start()
    assert timeline.is_running
    assert timeline.run() == 1
    assert not timeline.is_running
    assert stopped == [True]


def test_cancelled_timeline_stops_itself(timeline):
    timeline.schedule([NoteOn(0.0, 60), NoteOff(1.0, 60)])
    timeline.cancel()
    timeline.start()
    timeline.run()
    assert not timeline.is_running


HELD_PEDAL = [PedalChange(0.0, 1.0), NoteOn(2.0, 60), NoteOff(2.5, 60), PedalChange(3.0, 0.0)]


def test_start_from_offset_restores_held_pedal(timeline):
    timeline.schedule(HELD_PEDAL)
    timeline.start(origin=1.0, offset=1.0)
    assert timeline.piano.pedal_controller.engaged
    timeline.run()
    [main] = strikes(timeline)
    assert main.stop_time == 3.0
    assert timeline.piano.backend.tagged("pedalD") == []


def test_seek_restores_held_pedal(timeline):
    timeline.schedule(HELD_PEDAL)
    timeline.start()
    timeline.advance_to(0.5)
    timeline.seek(1.0)
    assert timeline.piano.pedal_controller.engaged
    assert len(timeline.piano.backend.tagged("pedalD")) == 1
    timeline.run()
    [main] = strikes(timeline)
    assert main.stop_time == pytest.approx(2.5)
