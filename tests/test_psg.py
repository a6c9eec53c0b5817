import unittest

from midi_to_gba import psg
from midi_to_gba.errors import MalformedInputError, RangeError


class TestRate(unittest.TestCase):
    def test_reference_note(self):
        # 2048 - 131072 / 442 = 1751.46
        self.assertEqual(psg.get_rate_from_note_number(69), 1751)

    def test_octave_halves_period(self):
        low = 2048 - psg.get_rate_from_note_number(57)
        high = 2048 - psg.get_rate_from_note_number(69)
        self.assertAlmostEqual(low / high, 2.0, delta=0.01)

    def test_custom_reference_pitch(self):
        self.assertEqual(psg.get_rate_from_note_number(69, reference_pitch=440.0), 1750)

    def test_out_of_range(self):
        with self.assertRaises(RangeError):
            psg.get_rate_from_note_number(20)
        with self.assertRaises(RangeError):
            psg.get_rate_from_note_number(128)


class TestNoteNames(unittest.TestCase):
    def test_parse(self):
        self.assertEqual(psg.parse_note_number("C-1"), 0)
        self.assertEqual(psg.parse_note_number("C4"), 60)
        self.assertEqual(psg.parse_note_number("A4"), 69)
        self.assertEqual(psg.parse_note_number("F#3"), 54)
        self.assertEqual(psg.parse_note_number("Bb3"), 58)

    def test_invalid(self):
        for name in ("H4", "C", "c4", "A9"):
            with self.assertRaises(MalformedInputError, msg=name):
                psg.parse_note_number(name)


class TestRegisters(unittest.TestCase):
    def test_envelope(self):
        self.assertEqual(psg.envelope(0, 2, 0, 0, 12), 0xC080)
        self.assertEqual(psg.envelope(63, 3, 7, 1, 15), 0xFFFF)

    def test_envelope_range(self):
        with self.assertRaises(RangeError):
            psg.envelope(64, 0, 0, 0, 0)
        with self.assertRaises(RangeError):
            psg.envelope(0, 4, 0, 0, 0)
        with self.assertRaises(RangeError):
            psg.envelope(0, 0, 0, 0, -1)

    def test_sound3_volume(self):
        self.assertEqual(psg.sound3_volume(192, 0, 1), 192 | 0x8000)
        self.assertEqual(psg.sound3_volume(0, 3, 0), 0x6000)
        with self.assertRaises(RangeError):
            psg.sound3_volume(256, 1, 0)

    def test_sound4_noise(self):
        self.assertEqual(psg.sound4_noise(3, 1, 5), 0x5B)
        with self.assertRaises(RangeError):
            psg.sound4_noise(8, 0, 0)

    def test_round_half_up(self):
        self.assertEqual(psg.round_half_up(2.5), 3)
        self.assertEqual(psg.round_half_up(11.81), 12)


class TestWaveRam(unittest.TestCase):
    def test_saw(self):
        self.assertEqual(psg.saw(2), [i % 16 for i in range(32)])
        self.assertEqual(psg.saw(1), [i // 2 for i in range(32)])


if __name__ == "__main__":
    unittest.main()
