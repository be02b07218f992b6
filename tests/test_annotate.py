import unittest
from pathlib import Path

from hymnsync.api.annotate import annotate_document, render_display_document
from hymnsync.api.expansion import expand_sections
from hymnsync.api.parts import assign_parts, resolve_parts
from hymnsync.api.positions import index_positions
from hymnsync.api.sections import detect_sections
from hymnsync.mei.document import XML_ID, load_document

TEST_DATA = Path(__file__).resolve().parents[1] / "assets" / "test_data"


class AnnotateTestCase(unittest.TestCase):
    score_name = "hymn-two-verses.mei"

    def setUp(self):
        self.document = load_document(TEST_DATA / self.score_name)
        self.index = index_positions(self.document)
        self.assignment = assign_parts(self.index, resolve_parts(self.index.staff_numbers, self.index.has_lyrics))
        self.plan = detect_sections(self.document, self.index, self.assignment)
        self.expansion = expand_sections(self.index, self.plan.sections)
        self.annotated = annotate_document(self.document, self.index, self.assignment, self.plan, self.expansion)

    def display(self, **options):
        return render_display_document(
            self.annotated,
            self.index,
            self.assignment,
            self.plan,
            self.expansion,
            **options,
        )


class TestAnnotateDocument(AnnotateTestCase):
    def test_notes_carry_positions_and_parts(self):
        n1 = self.annotated.find("n1")
        self.assertEqual(n1.get("ch-chord-position"), "0")
        self.assertEqual(n1.get("ch-expanded-chord-position"), "0 7")
        self.assertEqual(n1.get("ch-part-id"), "melody accompaniment")
        self.assertEqual(n1.get("ch-melody"), "")
        b1 = self.annotated.find("b1")
        self.assertEqual(b1.get("ch-part-id"), "accompaniment")
        self.assertIsNone(b1.get("ch-melody"))

    def test_verses_carry_lines_and_sections(self):
        v1a = self.annotated.find("v1a")
        self.assertEqual(v1a.get("ch-lyric-line-id"), "1.1")
        self.assertEqual(v1a.get("ch-section-id"), "verse-1")
        self.assertEqual(self.annotated.find("v1b").get("ch-section-id"), "verse-2")

    def test_containers_list_expanded_positions(self):
        section = self.annotated.find("section1")
        self.assertEqual(section.get("ch-expanded-chord-position"), " ".join(str(i) for i in range(14)))

    def test_input_document_is_untouched(self):
        self.assertIsNone(self.document.find("n1").get("ch-chord-position"))
        self.assertIn("ch-chord-position", self.annotated.to_mei())


class TestRenderDisplayDocument(AnnotateTestCase):
    def test_show_melody_only(self):
        display = self.display(show_melody_only=True)
        self.assertEqual([staff.get("n") for staff in display.root.iter("staff")], ["1", "1"])
        self.assertEqual(
            [note.get(XML_ID) for note in display.root.iter("note")],
            [f"n{i}" for i in range(1, 8)],
        )

    def test_hiding_second_verse(self):
        display = self.display(hidden_section_ids=["verse-2"])
        verses = list(display.root.iter("verse"))
        self.assertEqual(len(verses), 7)
        self.assertTrue(all(verse.get("n") == "1" for verse in verses))

    def test_hiding_first_verse_renumbers_lines(self):
        display = self.display(hidden_section_ids=["verse-1"])
        verses = list(display.root.iter("verse"))
        self.assertEqual([verse.get(XML_ID) for verse in verses], [f"v{i}b" for i in range(1, 8)])
        self.assertTrue(all(verse.get("n") == "1" for verse in verses))

    def test_annotated_document_is_not_modified(self):
        self.display(show_melody_only=True, hidden_section_ids=["verse-1"])
        self.assertEqual(len(list(self.annotated.root.iter("verse"))), 14)
        self.assertIsNotNone(self.annotated.find("b1"))

    def test_unsupported_expand_score(self):
        with self.assertRaises(ValueError):
            self.display(expand_score="full")


class TestRenderIntroduction(AnnotateTestCase):
    score_name = "hymn-intro-brackets.mei"

    def test_intro_bracket_directions_are_marked(self):
        marked = [elem.get("ch-intro-bracket") for elem in self.annotated.root.iter("dir")]
        self.assertEqual(marked, ["start", "end"])

    def test_expand_intro(self):
        display = self.display(expand_score="intro")
        types = [section.get("type") for section in display.root.iter("section")]
        self.assertIn("introduction", types)
        self.assertIsNone(next(self.annotated.root.iter("section")).get("type"))


if __name__ == "__main__":
    unittest.main()
