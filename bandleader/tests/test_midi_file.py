from pathlib import Path

import mido
import pytest

from bandleader import midi_file
from bandleader.errors import ConfigError, DecodeError
from bandleader.mixer import parse_rule
from bandleader.model import EventRecord, NoteOff, NoteOn, Other, PlayOp, SetTempo, TrackBoundary
from bandleader.pipeline import build_intervals, build_schedule


def make_song(path: Path, tpb: int = 480) -> Path:
    """Track 0: tempo only. Track 1: one note of 437 ticks. Track 2: two notes."""
    mid = mido.MidiFile(ticks_per_beat=tpb)
    tempo_track = mido.MidiTrack()
    tempo_track.append(mido.MetaMessage("set_tempo", tempo=500000, time=0))
    tempo_track.append(mido.MetaMessage("track_name", name="tempo", time=0))
    mid.tracks.append(tempo_track)
    lead = mido.MidiTrack()
    lead.append(mido.Message("program_change", program=1, time=0))
    lead.append(mido.Message("note_on", note=60, velocity=90, time=0))
    lead.append(mido.Message("note_off", note=60, velocity=0, time=437))
    mid.tracks.append(lead)
    bass = mido.MidiTrack()
    bass.append(mido.Message("note_on", note=40, velocity=90, time=0))
    bass.append(mido.Message("note_on", note=40, velocity=0, time=480))
    bass.append(mido.Message("note_on", note=43, velocity=90, time=0))
    bass.append(mido.Message("note_off", note=43, velocity=0, time=480))
    mid.tracks.append(bass)
    mid.save(str(path))
    return path


def test_decode_records(tmp_path: Path):
    records, tpb = midi_file.load(str(make_song(tmp_path / "song.mid")))
    assert tpb == 480
    lead = [r for r in records if r.channel == 1]
    assert lead[0] == EventRecord(0, 1, Other())
    assert lead[1] == EventRecord(0, 1, NoteOn(60, 90))
    assert lead[2] == EventRecord(437, 1, NoteOff(60))
    assert isinstance(lead[-1].event, TrackBoundary)
    assert EventRecord(0, 0, SetTempo(500000)) in records
    # one boundary per track
    assert sum(isinstance(r.event, TrackBoundary) for r in records) == 3


def test_list_channels_includes_tempo_track(tmp_path: Path):
    records, _ = midi_file.load(str(make_song(tmp_path / "song.mid")))
    # the tempo track has no notes but may still be named by a mix rule
    assert midi_file.list_channels(records) == [0, 1, 2]


def test_smpte_time_base_falls_back():
    assert midi_file.resolve_ticks_per_beat(-6400) == 480
    assert midi_file.resolve_ticks_per_beat(0xE728) == 480
    assert midi_file.resolve_ticks_per_beat(0) == 480
    assert midi_file.resolve_ticks_per_beat(96) == 96


def test_unreadable_file(tmp_path: Path):
    bad = tmp_path / "bad.mid"
    bad.write_bytes(b"not midi at all")
    with pytest.raises(DecodeError):
        midi_file.load(str(bad))
    with pytest.raises(DecodeError):
        midi_file.load(str(tmp_path / "missing.mid"))


def test_pipeline_from_file(tmp_path: Path):
    records, tpb = midi_file.load(str(make_song(tmp_path / "song.mid")))
    schedule = build_schedule(records, tpb)
    assert sorted(schedule) == [1, 2]
    assert [s.ops for s in schedule[1]] == [[PlayOp(60, 450)]]
    assert [(s.start_ms, s.ops) for s in schedule[2]] == [(0, [PlayOp(40, 500), PlayOp(43, 500)])]


def test_pipeline_with_rules(tmp_path: Path):
    records, tpb = midi_file.load(str(make_song(tmp_path / "song.mid")))
    intervals = build_intervals(records, tpb, [parse_rule("0=1,2")])
    assert sorted(intervals) == [0]
    notes = [iv.note for iv in intervals[0]]
    # 40ms round robin between lead (ch1) and bass (ch2) while both sound
    assert notes[:3] == [60, 40, 60]
    assert intervals[0][-1].end_ms == 1000


def test_pipeline_unknown_rule_channel(tmp_path: Path):
    records, tpb = midi_file.load(str(make_song(tmp_path / "song.mid")))
    with pytest.raises(ConfigError):
        build_schedule(records, tpb, [parse_rule("0=1,7")])
    # the tempo track exists even though it has no notes
    assert build_intervals(records, tpb, [parse_rule("5=0")])[5] == []
