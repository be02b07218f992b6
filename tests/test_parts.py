import unittest
from pathlib import Path

from hymnsync.api.parts import (
    assign_parts,
    build_parts_from_template,
    default_parts,
    normalize_template,
    parse_parts,
    resolve_parts,
    staff_part_ids,
)
from hymnsync.api.positions import index_positions
from hymnsync.mei.document import load_document

TEST_DATA = Path(__file__).resolve().parents[1] / "assets" / "test_data"


class TestPartsTemplates(unittest.TestCase):
    def test_aliases_expand(self):
        self.assertEqual(normalize_template("SATB"), "SA+TB")
        self.assertEqual(normalize_template("Soprano Alto + Tenor Bass"), "SA+TB")
        self.assertEqual(normalize_template("Melody"), "MC")

    def test_satb_template(self):
        parts = build_parts_from_template("SATB", (1, 2), True)
        self.assertEqual([part.part_id for part in parts], ["soprano", "alto", "tenor", "bass"])
        self.assertTrue(parts[0].ref_at(0).is_melody)
        self.assertEqual(parts[0].ref_at(0).staff_numbers, (1,))
        self.assertEqual(parts[2].ref_at(0).staff_numbers, (2,))
        self.assertFalse(parts[3].ref_at(0).is_melody)
        self.assertTrue(all(part.is_vocal for part in parts))

    def test_split_parts_with_explicit_melody(self):
        parts = build_parts_from_template("TT+BB#T2", (1, 2), True)
        self.assertEqual([part.part_id for part in parts], ["tenor-1", "tenor-2", "bass-1", "bass-2"])
        self.assertEqual(parts[1].name, "Tenor 2")
        self.assertTrue(parts[1].ref_at(0).is_melody)
        self.assertFalse(parts[0].ref_at(0).is_melody)
        self.assertEqual(parts[3].ref_at(0).staff_numbers, (2,))

    def test_unused_staves_get_accompaniment(self):
        parts = build_parts_from_template("Melody", (1, 2), True)
        self.assertEqual([part.part_id for part in parts], ["melody", "accompaniment"])
        accompaniment = parts[1]
        self.assertEqual(accompaniment.placement, "full")
        self.assertFalse(accompaniment.is_vocal)
        self.assertEqual(accompaniment.ref_at(0).staff_numbers, (1, 2))

    def test_template_changes_at_chord_position(self):
        parts = build_parts_from_template("0:SA+TB#S; 2:SA+TB#T", (1, 2), True)
        soprano = next(part for part in parts if part.part_id == "soprano")
        tenor = next(part for part in parts if part.part_id == "tenor")
        self.assertTrue(soprano.ref_at(1).is_melody)
        self.assertFalse(soprano.ref_at(3).is_melody)
        self.assertTrue(tenor.ref_at(2).is_melody)

    def test_invalid_template_falls_back_to_default(self):
        with self.assertLogs("hymnsync.api.parts", level="WARNING"):
            parts = resolve_parts((1, 2), True, template="XYZ")
        self.assertEqual([part.part_id for part in parts], ["melody", "accompaniment"])

    def test_non_numeric_chord_position_is_skipped(self):
        with self.assertLogs("hymnsync.api.parts", level="WARNING") as logs:
            parts = parse_parts(
                [
                    {
                        "partId": "solo",
                        "chordPositionRefs": {
                            "zero": {"isMelody": True, "staffNumbers": [1]},
                            "4": {"isMelody": True, "staffNumbers": [2]},
                        },
                    }
                ]
            )
        self.assertIn("parts_ref_invalid", logs.output[0])
        self.assertEqual(list(parts[0].chord_position_refs), [4])

    def test_parts_without_valid_refs_fall_back_to_default(self):
        with self.assertLogs("hymnsync.api.parts", level="WARNING") as logs:
            parts = resolve_parts(
                (1, 2),
                True,
                parts=[{"partId": "x", "chordPositionRefs": {"zero": {"isMelody": True, "staffNumbers": [1]}}}],
            )
        self.assertTrue(any("parts_entry_skipped" in line for line in logs.output))
        self.assertEqual([part.part_id for part in parts], ["melody", "accompaniment"])

    def test_explicit_parts_round_trip(self):
        defaults = default_parts((1, 2))
        self.assertEqual(parse_parts([part.to_dict() for part in defaults]), defaults)
        snake_case = parse_parts(
            [
                {
                    "part_id": "solo",
                    "is_vocal": True,
                    "placement": 1,
                    "chord_position_refs": {"0": {"is_melody": True, "staff_numbers": [1]}},
                }
            ]
        )
        self.assertEqual(snake_case[0].placement, 1)
        self.assertTrue(snake_case[0].ref_at(5).is_melody)

    def test_staff_slots(self):
        slots, melody = staff_part_ids(1, 0, default_parts((1, 2)))
        self.assertEqual(slots[0], ["melody", "accompaniment"])
        self.assertEqual(slots[1], ["accompaniment"])
        self.assertEqual(melody, ["melody"])


class TestAssignParts(unittest.TestCase):
    def test_default_parts_pick_top_staff_melody(self):
        index = index_positions(load_document(TEST_DATA / "hymn-two-verses.mei"))
        assignment = assign_parts(index, resolve_parts(index.staff_numbers, index.has_lyrics))
        melody_ids = [index.notes[i].element_id for i in assignment.melody_notes]
        self.assertEqual(melody_ids, ["n1", "n2", "n3", "n4", "n5", "n6", "n7"])
        self.assertEqual(assignment.note_part_ids[index.note("n1").index], ("melody", "accompaniment"))
        self.assertEqual(assignment.note_part_ids[index.note("b1").index], ("accompaniment",))
        self.assertEqual(assignment.channels(index.note("b1").index), [1])
        self.assertTrue(assignment.has_melody_info)

    def test_satb_by_chord_and_layer(self):
        index = index_positions(load_document(TEST_DATA / "hymn-satb.mei"))
        parts = resolve_parts(index.staff_numbers, index.has_lyrics, template="SATB")
        assignment = assign_parts(index, parts)

        def part_of(note_id):
            return assignment.note_part_ids[index.note(note_id).index]

        self.assertEqual(part_of("s1"), ("soprano",))
        self.assertEqual(part_of("a1"), ("alto",))
        self.assertEqual(part_of("t1"), ("tenor",))
        self.assertEqual(part_of("b2"), ("bass",))
        melody_ids = [index.notes[i].element_id for i in assignment.melody_notes]
        self.assertEqual(melody_ids, ["s1", "s2"])
        self.assertIn("c1", assignment.melody_owner_ids)
        self.assertEqual(assignment.channels(index.note("t1").index), [2])


if __name__ == "__main__":
    unittest.main()
