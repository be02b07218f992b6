import unittest
from fractions import Fraction
from pathlib import Path

from hymnsync.mei.document import (
    MEI_NS,
    element_id,
    iter_measures,
    load_document,
    quarter_length,
    strip_ref,
)
from hymnsync.mei.timemap import build_timemap

TEST_DATA = Path(__file__).resolve().parents[1] / "assets" / "test_data"

TRIPLET_SCORE = """<mei xmlns="http://www.music-encoding.org/ns/mei">
  <music><body><mdiv><score>
    <scoreDef meter.count="4" meter.unit="4"/>
    <section>
      <measure xml:id="m1" n="1">
        <staff n="1"><layer n="1">
          <tuplet num="3" numbase="2">
            <note xml:id="t1" dur="8" pname="c" oct="5"/>
            <note xml:id="t2" dur="8" pname="d" oct="5"/>
            <note xml:id="t3" dur="8" pname="e" oct="5"/>
          </tuplet>
          <note xml:id="h1" dur="2" pname="f" oct="5"/>
          <note xml:id="q1" dur="4" pname="g" oct="5"/>
        </layer></staff>
      </measure>
      <sb/>
      <measure xml:id="m2" n="2">
        <tempo xml:id="tempo1" midi.bpm="60">Slower</tempo>
        <staff n="1"><layer n="1">
          <mRest xml:id="r1"/>
        </layer></staff>
      </measure>
    </section>
  </score></mdiv></body></music>
</mei>
"""


class TestDurations(unittest.TestCase):
    def test_quarter_length(self):
        self.assertEqual(quarter_length("4"), Fraction(1))
        self.assertEqual(quarter_length("1"), Fraction(4))
        self.assertEqual(quarter_length("2", 1), Fraction(3))
        self.assertEqual(quarter_length("8", "2"), Fraction(7, 8))
        self.assertEqual(quarter_length(None), Fraction(1))

    def test_strip_ref(self):
        self.assertEqual(strip_ref("#n1"), "n1")
        self.assertEqual(strip_ref(" n2 "), "n2")
        self.assertIsNone(strip_ref(""))
        self.assertIsNone(strip_ref(None))


class TestLoadDocument(unittest.TestCase):
    def test_namespaces_are_stripped(self):
        document = load_document(TEST_DATA / "hymn-two-verses.mei")
        self.assertEqual(document.root.tag, "mei")
        self.assertEqual(document.source, str(TEST_DATA / "hymn-two-verses.mei"))
        note = document.find("n1")
        self.assertEqual(note.tag, "note")
        self.assertEqual(element_id(note), "n1")
        self.assertEqual(document.closest(note, "measure").get("n"), "1")

    def test_round_trip_keeps_ids_and_namespace(self):
        document = load_document(TEST_DATA / "hymn-two-verses.mei")
        text = document.to_mei()
        self.assertIn(f'xmlns="{MEI_NS}"', text)
        reloaded = load_document(text)
        self.assertEqual(sorted(reloaded.ids), sorted(document.ids))
        self.assertIsNone(reloaded.source)

    def test_derived_timemap_starts_every_measure(self):
        document = load_document(TEST_DATA / "hymn-two-verses.mei")
        first = document.timemap[0]
        self.assertEqual(first["qstamp"], 0.0)
        self.assertEqual(first["tempo"], 120.0)
        self.assertEqual(first["measureOn"], "m1")
        self.assertIn("n1", first["on"])
        self.assertIn("b1", first["on"])
        measure_starts = [entry["measureOn"] for entry in document.timemap if "measureOn" in entry]
        self.assertEqual(measure_starts, ["m1", "m2"])

    def test_explicit_timemap_is_used(self):
        timemap = [{"qstamp": 0.0, "tstamp": 0.0, "on": ["n1"]}]
        document = load_document(TEST_DATA / "hymn-two-verses.mei", timemap=timemap)
        self.assertEqual(document.timemap, tuple(timemap))

    def test_copy_root_is_independent(self):
        document = load_document(TEST_DATA / "hymn-two-verses.mei")
        clone = document.copy_root()
        clone.find(".//note").set("pname", "c")
        self.assertEqual(document.find("n1").get("pname"), "g")


class TestTimemap(unittest.TestCase):
    def setUp(self):
        self.document = load_document(TRIPLET_SCORE)
        self.entries = {entry["qstamp"]: entry for entry in build_timemap(self.document.root)}

    def test_measures_and_systems(self):
        measures = [(element_id(measure), meter, system) for measure, meter, system in iter_measures(self.document.root)]
        self.assertEqual(measures, [("m1", (4, 4), 0), ("m2", (4, 4), 1)])

    def test_tuplet_onsets(self):
        self.assertEqual(self.entries[0.0]["on"], ["t1"])
        self.assertEqual(self.entries[float(Fraction(1, 3))]["on"], ["t2"])
        self.assertEqual(self.entries[1.0]["on"], ["h1"])
        self.assertEqual(self.entries[1.0]["off"], ["t3"])
        self.assertAlmostEqual(self.entries[float(Fraction(1, 3))]["tstamp"], 500.0 / 3)

    def test_tempo_change_and_measure_rest(self):
        downbeat = self.entries[4.0]
        self.assertEqual(downbeat["measureOn"], "m2")
        self.assertEqual(downbeat["tempo"], 60.0)
        self.assertEqual(downbeat["restsOn"], ["r1"])
        self.assertEqual(downbeat["off"], ["q1"])
        self.assertAlmostEqual(downbeat["tstamp"], 2000.0)
        self.assertEqual(self.entries[8.0]["restsOff"], ["r1"])
        self.assertAlmostEqual(self.entries[8.0]["tstamp"], 6000.0)
        self.assertNotIn("tempo", self.entries[3.0])


if __name__ == "__main__":
    unittest.main()
