import unittest
from pathlib import Path

from hymnsync.api.alignment_errors import MidiAlignmentError
from hymnsync.api.expansion import expand_sections
from hymnsync.api.midi_align import (
    align_midi,
    convert_qpm_to_metronome_bpm,
    parse_fermatas,
    qpm_lookup,
    render_minimal_sequence,
)
from hymnsync.api.parts import assign_parts, resolve_parts
from hymnsync.api.positions import index_positions
from hymnsync.api.sections import detect_sections
from hymnsync.config import Settings
from hymnsync.mei.document import load_document
from hymnsync.midi.reader import MidiNote, NoteSequence, TempoChange

TEST_DATA = Path(__file__).resolve().parents[1] / "assets" / "test_data"

TIED_SCORE = """<mei xmlns="http://www.music-encoding.org/ns/mei"><music><body><mdiv><score>
<scoreDef meter.count="2" meter.unit="4"><staffGrp><staffDef n="1"/></staffGrp></scoreDef>
<section><measure xml:id="m1" n="1"><staff n="1"><layer n="1">
<note xml:id="t1" dur="4" pname="c" oct="4"/><note xml:id="t2" dur="4" pname="c" oct="4"/>
</layer></staff><tie xml:id="tie1" startid="#t1" endid="#t2"/></measure>
<measure xml:id="m2" n="2" right="end"><staff n="1"><layer n="1"><rest xml:id="r1" dur="2"/></layer></staff></measure>
</section></score></mdiv></body></music></mei>"""

TRAILING_TIE_SCORE = """<mei xmlns="http://www.music-encoding.org/ns/mei"><music><body><mdiv><score>
<scoreDef meter.count="2" meter.unit="4" midi.bpm="60"><staffGrp><staffDef n="1"/></staffGrp></scoreDef>
<section><measure xml:id="m1" n="1"><staff n="1"><layer n="1">
<note xml:id="a1" dur="4" pname="d" oct="4"><verse n="1"><syl>Rest</syl></verse></note>
<note xml:id="a2" dur="4" pname="c" oct="4"><verse n="1"><syl>now</syl></verse></note>
</layer></staff></measure>
<measure xml:id="m2" n="2" right="end"><staff n="1"><layer n="1"><note xml:id="a3" dur="2" pname="c" oct="4"/></layer></staff>
<tie xml:id="tie-a" startid="#a2" endid="#a3"/></measure>
</section></score></mdiv></body></music></mei>"""

SUNG_TIE_SCORE = """<mei xmlns="http://www.music-encoding.org/ns/mei"><music><body><mdiv><score>
<scoreDef meter.count="2" meter.unit="4" midi.bpm="60"><staffGrp><staffDef n="1"/></staffGrp></scoreDef>
<section><measure xml:id="m1" n="1" right="end"><staff n="1"><layer n="1">
<note xml:id="s1" dur="4" pname="c" oct="4"><verse n="1"><syl>Glo</syl></verse></note>
<note xml:id="s2" dur="4" pname="c" oct="4"><verse n="1"><syl>ry</syl></verse></note>
</layer></staff><tie xml:id="tie-s" startid="#s1" endid="#s2"/></measure>
</section></score></mdiv></body></music></mei>"""

TRAILING_REST_SCORE = """<mei xmlns="http://www.music-encoding.org/ns/mei"><music><body><mdiv><score>
<scoreDef meter.count="2" meter.unit="4" midi.bpm="60"><staffGrp><staffDef n="1"/></staffGrp></scoreDef>
<section><measure xml:id="m1" n="1"><staff n="1"><layer n="1">
<note xml:id="e1" dur="4" pname="e" oct="4"><verse n="1"><syl>Sing</syl></verse></note>
<note xml:id="e2" dur="4" pname="f" oct="4"><verse n="1"><syl>on</syl></verse></note>
</layer></staff></measure>
<measure xml:id="m2" n="2" right="end"><staff n="1"><layer n="1">
<note xml:id="e3" dur="4" pname="g" oct="4"><verse n="1"><syl>high</syl></verse></note><rest xml:id="e4" dur="4"/>
</layer></staff></measure>
</section></score></mdiv></body></music></mei>"""

TIE_CHAIN_SCORE = """<mei xmlns="http://www.music-encoding.org/ns/mei"><music><body><mdiv><score>
<scoreDef meter.count="3" meter.unit="4"><staffGrp><staffDef n="1"/></staffGrp></scoreDef>
<section><measure xml:id="m1" n="1" right="end"><staff n="1"><layer n="1">
<note xml:id="c1" dur="4" pname="e" oct="4"><verse n="1"><syl>Lord</syl></verse></note>
<note xml:id="c2" dur="4" pname="e" oct="4"/><note xml:id="c3" dur="4" pname="e" oct="4"/>
</layer></staff><tie xml:id="tie-c1" startid="#c1" endid="#c2"/><tie xml:id="tie-c2" startid="#c2" endid="#c3"/></measure>
</section></score></mdiv></body></music></mei>"""

MELODY = (67, 69, 71, 67, 69, 71, 67)


def _melody_sequence(passes=2, velocity=90):
    notes = []
    for offset in range(passes):
        start = offset * 4.0
        for position, pitch in enumerate(MELODY):
            length = 1.0 if position == len(MELODY) - 1 else 0.5
            notes.append(MidiNote(pitch=pitch, start_time=start, end_time=start + length, velocity=velocity))
            start += length
    return NoteSequence(notes=tuple(notes), tempos=(TempoChange(time=0.0, qpm=120.0),))


def _align_score(source, sequence=None, **kwargs):
    document = load_document(source)
    index = index_positions(document)
    assignment = assign_parts(index, resolve_parts(index.staff_numbers, index.has_lyrics))
    plan = detect_sections(document, index, assignment)
    expansion = expand_sections(index, plan.sections)
    return align_midi(index, assignment, plan.sections, expansion, sequence, timemap=document.timemap, **kwargs)


def _stretched_melody(tempos=()):
    """One pass of the melody with the second position held for a full second."""
    lengths = (0.5, 1.0, 0.5, 0.5, 0.5, 0.5, 1.0)
    notes = []
    start = 0.0
    for pitch, length in zip(MELODY, lengths):
        notes.append(MidiNote(pitch=pitch, start_time=start, end_time=start + length))
        start += length
    return NoteSequence(notes=tuple(notes), tempos=tuple(tempos))


class AlignmentTestCase(unittest.TestCase):
    def setUp(self):
        self.document = load_document(TEST_DATA / "hymn-two-verses.mei")
        self.index = index_positions(self.document)
        self.assignment = assign_parts(self.index, resolve_parts(self.index.staff_numbers, self.index.has_lyrics))
        self.plan = detect_sections(self.document, self.index, self.assignment)
        self.expansion = expand_sections(self.index, self.plan.sections)

    def align(self, sequence=None, **kwargs):
        return align_midi(
            self.index,
            self.assignment,
            self.plan.sections,
            self.expansion,
            sequence,
            timemap=self.document.timemap,
            **kwargs,
        )


class TestEngineRendering(AlignmentTestCase):
    def test_minimal_sequence_from_score(self):
        alignment = self.align()
        self.assertEqual(alignment.midi_type, "minimal")
        self.assertEqual(alignment.source, "engine")
        self.assertEqual(len(alignment.positions), 7)
        for timing in alignment.positions[:6]:
            self.assertAlmostEqual(timing.duration, 0.5)
        self.assertAlmostEqual(alignment.positions[6].start_time, 3.0)
        self.assertAlmostEqual(alignment.positions[6].end_time, 4.0)
        self.assertEqual(len(alignment.expanded), 14)
        self.assertAlmostEqual(alignment.expanded[7].start_time, 4.0)
        self.assertAlmostEqual(alignment.total_time, 8.0)

    def test_synthesized_notes_follow_every_pass(self):
        alignment = self.align()
        self.assertEqual(len(alignment.notes), 18)
        by_id = {note.note_ids: note for note in alignment.notes if note.expanded_chord_position == 0}
        self.assertEqual(by_id[("n1",)].channels, (0, 1))
        self.assertEqual(by_id[("b1",)].channels, (1,))
        self.assertEqual(by_id[("b1",)].pitch, 55)
        self.assertAlmostEqual(by_id[("b1",)].end_time, 2.0)
        second_pass = [note for note in alignment.notes if note.expanded_chord_position == 7]
        self.assertEqual(sorted(note.pitch for note in second_pass), [55, 67])
        self.assertAlmostEqual(second_pass[0].start_time, 4.0)

    def test_fermata_stretches_position_and_following_passes(self):
        alignment = self.align(fermatas=[{"chordPosition": 1, "durationFactor": 2}])
        self.assertEqual(alignment.fermata_positions, (1,))
        self.assertAlmostEqual(alignment.positions[1].end_time, 1.5)
        self.assertAlmostEqual(alignment.expanded[2].start_time, 1.5)
        self.assertAlmostEqual(alignment.total_time, 9.0)

    def test_metronome_beats(self):
        beats = self.align().metronome
        self.assertEqual(len(beats), 16)
        self.assertEqual([beat.start_q for beat in beats if beat.is_downbeat], [0.0, 4.0, 8.0, 12.0])
        self.assertTrue(all(beat.bpm == 120 for beat in beats))
        self.assertAlmostEqual(beats[7].start_time, 3.5)
        self.assertEqual(beats[7].beat_number, 4)
        self.assertTrue(beats[8].is_downbeat)
        self.assertEqual(beats[8].beat_number, 1)
        self.assertAlmostEqual(beats[8].start_time, 4.0)

    def test_to_dict_uses_camel_case(self):
        payload = self.align().to_dict()
        self.assertEqual(payload["midiType"], "minimal")
        self.assertEqual(len(payload["expandedChordPositions"]), 14)
        self.assertIn("metronomeBeats", payload)


class TestExternalSequences(AlignmentTestCase):
    def test_complete_sequence_is_used_as_is(self):
        with self.assertLogs("hymnsync.api.midi_align", level="WARNING"):
            alignment = self.align(_melody_sequence())
        self.assertEqual(alignment.midi_type, "complete")
        self.assertEqual(alignment.source, "external")
        self.assertEqual(len(alignment.notes), 14)
        self.assertTrue(all(note.velocity == 90 for note in alignment.notes))
        self.assertEqual(alignment.notes[0].note_ids, ("n1",))
        self.assertAlmostEqual(alignment.expanded[7].start_time, 4.0)
        self.assertAlmostEqual(alignment.total_time, 8.0)

    def test_mismatch_regenerates_from_score(self):
        sequence = NoteSequence(notes=tuple(MidiNote(60, float(i), float(i) + 1.0) for i in range(3)))
        with self.assertLogs("hymnsync.api.midi_align", level="WARNING"):
            alignment = self.align(sequence)
        self.assertEqual(alignment.midi_type, "minimal")
        self.assertEqual(alignment.source, "engine")

    def test_mismatch_without_regeneration_raises(self):
        sequence = NoteSequence(notes=tuple(MidiNote(60, float(i), float(i) + 1.0) for i in range(3)))
        with self.assertRaises(MidiAlignmentError) as ctx:
            self.align(sequence, settings=Settings(regenerate_on_mismatch=False))
        error = ctx.exception
        self.assertEqual(error.start_time_count, 3)
        self.assertEqual(error.audible_chord_positions, 7)
        self.assertEqual(error.audible_expanded_chord_positions, 14)
        self.assertEqual(error.to_payload()["detail"], "chord_position_mismatch")

    def test_external_one_pass_is_minimal(self):
        alignment = self.align(_stretched_melody())
        self.assertEqual(alignment.midi_type, "minimal")
        self.assertEqual(alignment.source, "external")
        self.assertAlmostEqual(alignment.positions[1].end_time, 1.5)
        self.assertAlmostEqual(alignment.positions[6].end_time, 4.5)
        self.assertAlmostEqual(alignment.expanded[7].start_time, 4.5)
        self.assertAlmostEqual(alignment.total_time, 9.0)

    def test_fermata_already_slowed_in_recording_is_not_stretched(self):
        tempos = (TempoChange(time=0.0, qpm=120.0), TempoChange(time=0.5, qpm=60.0), TempoChange(time=1.5, qpm=120.0))
        alignment = self.align(_stretched_melody(tempos), fermatas=[{"chordPosition": 1, "durationFactor": 2}])
        self.assertEqual(alignment.positions[1].qpm, 60.0)
        self.assertAlmostEqual(alignment.positions[1].end_time, 1.5)
        self.assertAlmostEqual(alignment.total_time, 9.0)

    def test_fermata_in_steady_recording_is_stretched(self):
        tempos = (TempoChange(time=0.0, qpm=120.0),)
        alignment = self.align(_stretched_melody(tempos), fermatas=[{"chordPosition": 1, "durationFactor": 2}])
        self.assertAlmostEqual(alignment.positions[1].end_time, 2.5)
        self.assertAlmostEqual(alignment.expanded[2].start_time, 2.5)


class TestTiesAndTrailingSilence(unittest.TestCase):
    def test_trailing_tie_is_taken_from_the_last_sung_position(self):
        alignment = _align_score(TRAILING_TIE_SCORE)
        spans = [(timing.start_time, timing.end_time) for timing in alignment.positions]
        self.assertEqual(len(spans), 3)
        for (start, end), (expected_start, expected_end) in zip(spans, [(0.0, 1.0), (1.0, 2.0), (2.0, 4.0)]):
            self.assertAlmostEqual(start, expected_start)
            self.assertAlmostEqual(end, expected_end)
        self.assertAlmostEqual(alignment.total_time, 4.0)
        self.assertEqual(len(alignment.metronome), 4)
        self.assertAlmostEqual(alignment.metronome[-1].start_time, 3.0)

    def test_tie_into_unsung_note_merges(self):
        alignment = _align_score(TRAILING_TIE_SCORE)
        tied = [note for note in alignment.notes if note.pitch == 60]
        self.assertEqual(len(tied), 1)
        self.assertEqual(tied[0].note_ids, ("a2", "a3"))
        self.assertAlmostEqual(tied[0].start_time, 1.0)
        self.assertAlmostEqual(tied[0].end_time, 4.0)

    def test_tie_into_sung_note_splits(self):
        alignment = _align_score(SUNG_TIE_SCORE)
        notes = [(note.note_ids, note.start_time, note.end_time) for note in alignment.notes]
        self.assertEqual([ids for ids, _, _ in notes], [("s1",), ("s2",)])
        self.assertAlmostEqual(notes[0][1], 0.0)
        self.assertAlmostEqual(notes[0][2], 1.0)
        self.assertAlmostEqual(notes[1][1], 1.0)
        self.assertAlmostEqual(notes[1][2], 2.0)
        self.assertAlmostEqual(alignment.total_time, 2.0)

    def test_trailing_rest_keeps_total_time(self):
        alignment = _align_score(TRAILING_REST_SCORE)
        self.assertAlmostEqual(alignment.positions[2].start_time, 2.0)
        self.assertAlmostEqual(alignment.positions[2].end_time, 3.0)
        self.assertAlmostEqual(alignment.positions[3].start_time, 3.0)
        self.assertAlmostEqual(alignment.positions[3].end_time, 4.0)
        self.assertAlmostEqual(alignment.total_time, 4.0)

    def test_tie_chain_reports_every_note(self):
        alignment = _align_score(TIE_CHAIN_SCORE)
        self.assertEqual(len(alignment.notes), 1)
        self.assertEqual(alignment.notes[0].note_ids, ("c1", "c2", "c3"))
        self.assertAlmostEqual(alignment.notes[0].end_time, 1.5)
        self.assertAlmostEqual(alignment.positions[0].end_time, 0.5)
        self.assertAlmostEqual(alignment.positions[2].start_time, 1.0)



class TestHelpers(unittest.TestCase):
    def test_tied_notes_render_as_one(self):
        index = index_positions(load_document(TIED_SCORE))
        sequence = render_minimal_sequence(index)
        self.assertEqual(sequence.notes, (MidiNote(pitch=60, start_time=0.0, end_time=1.0),))

    def test_qpm_lookup(self):
        lookup = qpm_lookup([TempoChange(time=2.0, qpm=60.0), TempoChange(time=0.0, qpm=120.0)], 100.0)
        self.assertEqual(lookup(1.0), 120.0)
        self.assertEqual(lookup(2.0), 60.0)
        self.assertEqual(lookup(-1.0), 100.0)
        self.assertEqual(qpm_lookup([], 100.0)(5.0), 100.0)

    def test_convert_qpm_to_metronome_bpm(self):
        self.assertEqual(convert_qpm_to_metronome_bpm(120, (4, 4)), 120)
        self.assertEqual(convert_qpm_to_metronome_bpm(120, (3, 4)), 120)
        self.assertEqual(convert_qpm_to_metronome_bpm(120, (6, 8)), 80)
        self.assertEqual(convert_qpm_to_metronome_bpm(120, (2, 2)), 60)
        self.assertEqual(convert_qpm_to_metronome_bpm(90, (3, 8)), 180)
        self.assertEqual(convert_qpm_to_metronome_bpm(120, (7, 3)), 120)

    def test_parse_fermatas(self):
        with self.assertLogs("hymnsync.api.midi_align", level="WARNING"):
            fermatas = parse_fermatas([{"chord_position": 2, "duration_factor": 1.5}, {"durationFactor": 2}])
        self.assertEqual(len(fermatas), 1)
        self.assertEqual(fermatas[0].chord_position, 2)
        self.assertEqual(fermatas[0].duration_factor, 1.5)


if __name__ == "__main__":
    unittest.main()
