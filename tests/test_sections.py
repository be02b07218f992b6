import unittest
from pathlib import Path

from hymnsync.api.introduction import extract_piano_introduction
from hymnsync.api.parts import assign_parts, resolve_parts
from hymnsync.api.positions import index_positions
from hymnsync.api.sections import (
    classify_structure,
    detect_sections,
    generate_simple_sections,
    get_verse_numbers,
    has_repeat_or_jump,
)
from hymnsync.api.structure import PositionRange
from hymnsync.mei.document import load_document

TEST_DATA = Path(__file__).resolve().parents[1] / "assets" / "test_data"

UNFINISHED_SCORE = """<mei xmlns="http://www.music-encoding.org/ns/mei"><music><body><mdiv><score>
<scoreDef meter.count="2" meter.unit="4"><staffGrp><staffDef n="1"/></staffGrp></scoreDef>
<section><measure xml:id="m1" n="1" right="rptend"><staff n="1"><layer n="1">
<note xml:id="u1" dur="4" pname="c" oct="4"/><note xml:id="u2" dur="4" pname="d" oct="4"/>
</layer></staff></measure></section></score></mdiv></body></music></mei>"""


def _plan(source, **kwargs):
    document = load_document(source)
    index = index_positions(document)
    assignment = assign_parts(index, resolve_parts(index.staff_numbers, index.has_lyrics))
    return document, index, detect_sections(document, index, assignment, **kwargs)


class TestDetectSections(unittest.TestCase):
    def test_numbered_verses_unroll(self):
        document, _, plan = _plan(TEST_DATA / "hymn-two-verses.mei")
        self.assertEqual(get_verse_numbers(document), [1, 2])
        self.assertFalse(plan.structure.has_complex_sections)
        self.assertFalse(plan.structure.has_repeat_or_jump)
        self.assertEqual([section.section_id for section in plan.sections], ["verse-1", "verse-2"])
        first = plan.sections[0]
        self.assertEqual(first.name, "Verse 1")
        self.assertEqual(first.marker, "1")
        self.assertFalse(first.pause_after)
        self.assertEqual(first.chord_position_ranges, (PositionRange(0, 7, (1, 2), ("1.1",)),))
        self.assertEqual(plan.sections[1].chord_position_ranges[0].lyric_line_ids, ("1.2",))
        self.assertFalse(plan.has_introduction)

    def test_single_line_run_becomes_chorus(self):
        _, _, plan = _plan(TEST_DATA / "hymn-verse-chorus.mei")
        self.assertEqual(
            [section.section_id for section in plan.sections],
            ["verse-1", "chorus-1", "verse-2", "chorus-2"],
        )
        chorus = plan.section("chorus-1")
        self.assertEqual(chorus.type, "chorus")
        self.assertEqual(chorus.chord_position_ranges, (PositionRange(4, 8, (1,), ("1.1",)),))
        self.assertTrue(chorus.pause_after)
        self.assertFalse(plan.section("verse-1").pause_after)
        self.assertFalse(plan.section("chorus-2").pause_after)
        self.assertEqual(plan.section("verse-2").chord_position_ranges[0].lyric_line_ids, ("1.2",))
        self.assertEqual(plan.single_line_positions, frozenset({4, 5, 6, 7}))
        self.assertEqual(plan.single_line_ranges_by_staff[1], ((4, 8), (12, 16)))

    def test_intro_brackets_add_introduction(self):
        _, _, plan = _plan(TEST_DATA / "hymn-intro-brackets.mei")
        self.assertTrue(plan.has_introduction)
        intro = plan.sections[0]
        self.assertEqual(intro.section_id, "introduction")
        self.assertTrue(intro.pause_after)
        self.assertEqual(intro.chord_position_ranges, (PositionRange(0, 2, (1, 2), ()),))
        self.assertEqual([section.section_id for section in plan.sections[1:]], ["verse-1", "verse-2"])

    def test_extracted_introduction_section_precedes_verses(self):
        document = extract_piano_introduction(load_document(TEST_DATA / "hymn-intro-brackets.mei"))
        index = index_positions(document)
        assignment = assign_parts(index, resolve_parts(index.staff_numbers, index.has_lyrics))
        plan = detect_sections(document, index, assignment)
        self.assertFalse(plan.structure.has_complex_sections)
        self.assertEqual([section.section_id for section in plan.sections], ["introduction", "verse-1", "verse-2"])
        self.assertEqual(plan.sections[0].chord_position_ranges, (PositionRange(0, 2, (1, 2), ()),))
        self.assertEqual(plan.sections[1].chord_position_ranges, (PositionRange(2, 9, (1, 2), ("1.1",)),))

    def test_explicit_sections_win(self):
        _, _, plan = _plan(
            TEST_DATA / "hymn-two-verses.mei",
            sections=[
                {
                    "sectionId": "all",
                    "type": "verse",
                    "name": "All",
                    "chordPositionRanges": [{"start": 0, "end": 7, "lyricLineIds": ["1.1"]}],
                },
                {"section_id": "odd", "type": "refrain"},
            ],
        )
        self.assertEqual([section.section_id for section in plan.sections], ["all", "odd"])
        self.assertIsNone(plan.sections[0].chord_position_ranges[0].staff_numbers)
        self.assertEqual(plan.sections[1].type, "unknown")

    def test_invalid_explicit_range_is_skipped(self):
        with self.assertLogs("hymnsync.api.structure", level="WARNING") as logs:
            _, _, plan = _plan(
                TEST_DATA / "hymn-two-verses.mei",
                sections=[
                    {
                        "sectionId": "all",
                        "type": "verse",
                        "chordPositionRanges": [{"start": "abc", "end": 3}, {"start": 0, "end": 7}],
                    }
                ],
            )
        self.assertIn("sections_range_invalid", logs.output[0])
        self.assertEqual([section.section_id for section in plan.sections], ["all"])
        self.assertEqual(plan.sections[0].chord_position_ranges, (PositionRange(0, 7),))

    def test_sections_without_valid_ranges_fall_back_to_inferred(self):
        with self.assertLogs("hymnsync.api.structure", level="WARNING") as logs:
            _, _, plan = _plan(
                TEST_DATA / "hymn-two-verses.mei",
                sections=[{"sectionId": "x", "type": "verse", "chordPositionRanges": [{"start": "abc", "end": 3}]}],
            )
        self.assertTrue(any("sections_entry_skipped" in line for line in logs.output))
        self.assertEqual([section.section_id for section in plan.sections], ["verse-1", "verse-2"])

    def test_complex_score_falls_back_to_unknown_section(self):
        document, _, plan = _plan(UNFINISHED_SCORE)
        self.assertTrue(has_repeat_or_jump(document))
        self.assertTrue(plan.structure.has_complex_sections)
        self.assertEqual([section.section_id for section in plan.sections], ["unknown"])
        self.assertEqual(plan.sections[0].chord_position_ranges, (PositionRange(0, 2, (1,), None),))


def _score(body):
    return (
        '<mei xmlns="http://www.music-encoding.org/ns/mei"><music><body><mdiv><score>'
        '<scoreDef meter.count="2" meter.unit="4"><staffGrp><staffDef n="1"/></staffGrp></scoreDef>'
        f"<section>{body}</section></score></mdiv></body></music></mei>"
    )


def _measure(measure_id, right, *syllables, labelled=False):
    def verse(line, text, number):
        label = f"<label>{line}.</label>" if labelled and number == 1 else ""
        return f'<verse n="{line}">{label}<syl>{text}</syl></verse>'

    notes = "".join(
        f'<note xml:id="{measure_id}n{number}" dur="4" pname="c" oct="4">'
        + "".join(verse(line, text, number) for line, text in lines)
        + "</note>"
        for number, lines in enumerate(syllables, start=1)
    )
    return f'<measure xml:id="{measure_id}" right="{right}"><staff n="1"><layer n="1">{notes}</layer></staff></measure>'


def _structure(source):
    document = load_document(source)
    return classify_structure(document, get_verse_numbers(document), False)


class TestClassifyStructure(unittest.TestCase):
    def test_single_container_expansion_repeats_per_verse(self):
        score = _score(
            '<expansion xml:id="e1" plist="#v"/>'
            '<section xml:id="v">'
            + _measure("m1", "single", [(1, "Praise"), (2, "Bless")], [(1, "the"), (2, "the")], labelled=True)
            + _measure("m2", "end", [(1, "Lord"), (2, "Name")], [(1, "now"), (2, "now")])
            + "</section>"
        )
        structure = _structure(score)
        self.assertFalse(structure.has_complex_sections)
        self.assertEqual(structure.verse_numbers, (1, 2))
        self.assertEqual(structure.expansion_type, "verse-chorus")
        self.assertEqual(structure.expansion_ids, ("v", "v"))
        self.assertFalse(structure.has_initial_chorus)
        self.assertEqual(structure.container_types, {"v": "verse"})

    def test_chorus_before_verse_is_initial_chorus(self):
        score = _score(
            '<expansion xml:id="e1" plist="#c #v #c"/>'
            '<section xml:id="v">' + _measure("m1", "dbl", [(1, "Lord")], [(1, "come")]) + "</section>"
            '<section xml:id="c">' + _measure("m2", "end", [(1, "Glo")], [(1, "ry")]) + "</section>"
        )
        structure = _structure(score)
        self.assertFalse(structure.has_complex_sections)
        self.assertEqual(structure.expansion_type, "chorus-verse-chorus")
        self.assertTrue(structure.has_initial_chorus)
        self.assertEqual(structure.expansion_ids, ("c", "v", "c"))
        self.assertEqual(structure.container_types, {"c": "chorus", "v": "verse"})

    def test_multiple_end_barlines_are_complex(self):
        score = _score(_measure("m1", "end", [(1, "Lord")], [(1, "come")]) + _measure("m2", "end", [(1, "A")], [(1, "men")]))
        with self.assertLogs("hymnsync.api.sections", level="DEBUG") as logs:
            structure = _structure(score)
        self.assertTrue(structure.has_complex_sections)
        self.assertIsNone(structure.expansion_type)
        self.assertTrue(any("multiple_end_barlines" in line for line in logs.output))

    def test_first_measure_without_lyrics_is_complex(self):
        score = _score(_measure("m1", "single", [], []) + _measure("m2", "end", [(1, "Lord")], [(1, "come")]))
        with self.assertLogs("hymnsync.api.sections", level="DEBUG") as logs:
            structure = _structure(score)
        self.assertTrue(structure.has_complex_sections)
        self.assertTrue(any("first_measure_without_lyrics" in line for line in logs.output))
        self.assertFalse(any("multiple_end_barlines" in line for line in logs.output))


class TestGenerateSimpleSections(unittest.TestCase):
    def test_chorus_starting_inside_introduction_is_clamped(self):
        document = load_document(TEST_DATA / "hymn-verse-chorus.mei")
        index = index_positions(document)
        assignment = assign_parts(index, resolve_parts(index.staff_numbers, index.has_lyrics))
        sections = generate_simple_sections(index, assignment, get_verse_numbers(document), False, 3, 6)
        ranges = [(cpr.start, cpr.end) for section in sections for cpr in section.chord_position_ranges]
        self.assertTrue(ranges)
        self.assertTrue(all(start < end for start, end in ranges))
        self.assertEqual(ranges, [(6, 8), (6, 8)])
        self.assertTrue(all(section.type == "chorus" for section in sections))

    def test_chorus_inside_introduction_is_dropped(self):
        document = load_document(TEST_DATA / "hymn-verse-chorus.mei")
        index = index_positions(document)
        assignment = assign_parts(index, resolve_parts(index.staff_numbers, index.has_lyrics))
        self.assertEqual(generate_simple_sections(index, assignment, [1], False, 3, 8), [])



if __name__ == "__main__":
    unittest.main()
