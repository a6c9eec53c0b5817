import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout

from midi_to_gba import psg
from midi_to_gba.midi_to_gba import _default_var_name, _normalize_config, main
from midi_to_gba.song import DEFAULT_CONFIG, decode_binary
from tests.midi_fixtures import make_midi, note, text


class TestMain(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def _save(self, mid, name="song.mid") -> str:
        path = os.path.join(self.tmp, name)
        mid.save(path)
        return path

    def _run(self, *args) -> tuple[int, str]:
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(["midi-to-gba", *args])
        return code, out.getvalue()

    def _read(self, path: str) -> str:
        with open(path, "r", encoding="ascii") as f:
            return f.read()

    def test_writes_cpp_array(self):
        src = self._save(make_midi({"CH1": note(0, 60, 3840)}))
        code, _ = self._run(src)
        self.assertEqual(code, 0)
        output = self._read(os.path.join(self.tmp, "song.cpp"))
        self.assertIn("namespace Song {", output)
        self.assertIn("extern const std::uint32_t song[7] = {", output)
        # scaled ticks per beat = 1, offset to end = 28
        self.assertIn("0x001C0001", output)
        self.assertIn("// MIDI summary: ticks_per_beat=480, quantum=480", output)
        self.assertIn("// Channel usage: ch1:1", output)

    def test_explicit_output_and_name(self):
        src = self._save(make_midi({"CH2": note(0, 60, 960)}))
        dst = os.path.join(self.tmp, "out", "music.cpp")
        os.makedirs(os.path.dirname(dst))
        code, _ = self._run(src, dst, "--var-name", "title_theme")
        self.assertEqual(code, 0)
        self.assertIn("std::uint32_t title_theme[", self._read(dst))

    def test_binary_and_trace_outputs(self):
        src = self._save(make_midi({"CH1": note(0, 60, 480) + note(480, 64, 120)}))
        bin_path = os.path.join(self.tmp, "song.bin")
        trace_path = os.path.join(self.tmp, "song.trace.txt")
        code, _ = self._run(src, "--binary-output", bin_path, "--trace-output", trace_path)
        self.assertEqual(code, 0)

        with open(bin_path, "rb") as f:
            data = f.read()
        decoded = decode_binary(data)
        self.assertEqual(decoded["offset_to_end"], len(data))

        trace = self._read(trace_path)
        self.assertIn("[COMMANDS]", trace)
        self.assertIn("loop_point", trace)
        self.assertIn("[STREAM]", trace)
        self.assertIn("<- loop", trace)
        self.assertIn("bpm 120", trace)

    def test_compile_error(self):
        src = self._save(make_midi({"CH1": note(0, 60, 480) + note(240, 62, 480)}))
        code, out = self._run(src)
        self.assertEqual(code, 2)
        self.assertIn("Error: polyphony is not allowed", out)
        self.assertFalse(os.path.exists(os.path.join(self.tmp, "song.cpp")))

    def test_unreadable_midi(self):
        src = os.path.join(self.tmp, "broken.mid")
        with open(src, "wb") as f:
            f.write(b"not a midi file")
        code, out = self._run(src)
        self.assertEqual(code, 2)
        self.assertIn("Error: cannot read MIDI file", out)

    def test_warnings_reported(self):
        items = text(0, "#@VIBRATO=2") + note(0, 60, 960)
        src = self._save(make_midi({"CH1": items}))
        code, out = self._run(src)
        self.assertEqual(code, 0)
        self.assertIn("Warning: unknown directive VIBRATO ignored (tick 0)", out)
        output = self._read(os.path.join(self.tmp, "song.cpp"))
        self.assertIn("// Warnings:", output)
        self.assertIn("// - unknown directive VIBRATO ignored (tick 0)", output)

    def test_config_file(self):
        src = self._save(make_midi({"CH1": note(0, 69, 960)}))
        config_path = os.path.join(self.tmp, "config.json")
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump({"reference_pitch": 440}, f)
        bin_path = os.path.join(self.tmp, "song.bin")
        code, _ = self._run(src, "--config", config_path, "--binary-output", bin_path)
        self.assertEqual(code, 0)
        with open(bin_path, "rb") as f:
            decoded = decode_binary(f.read())
        self.assertEqual(decoded["frequency_table"][0], psg.get_rate_from_note_number(69, reference_pitch=440.0))

    def test_config_value_of_wrong_type(self):
        src = self._save(make_midi({"CH1": note(0, 60, 960)}))
        config_path = os.path.join(self.tmp, "config.json")
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump({"base_rate": [1], "default_pitch": None}, f)
        code, out = self._run(src, "--config", config_path)
        self.assertEqual(code, 2)
        self.assertIn("Error: cannot load config", out)
        self.assertFalse(os.path.exists(os.path.join(self.tmp, "song.cpp")))

    def test_missing_config_file(self):
        src = self._save(make_midi({"CH1": note(0, 60, 960)}))
        code, out = self._run(src, "--config", os.path.join(self.tmp, "missing.json"))
        self.assertEqual(code, 2)
        self.assertIn("Error: cannot load config", out)


class TestHelpers(unittest.TestCase):
    def test_default_var_name(self):
        self.assertEqual(_default_var_name("music/my-song.mid"), "my_song")
        self.assertEqual(_default_var_name("01 intro.mid"), "_01_intro")

    def test_normalize_config_clamps(self):
        config = _normalize_config(
            {"use_length_threshold": 1.0, "max_table_size": 1000, "default_duty": 7}, DEFAULT_CONFIG
        )
        self.assertEqual(config["use_length_threshold"], 64 / 256)
        self.assertEqual(config["max_table_size"], 256)
        self.assertEqual(config["default_duty"], 3)
        self.assertEqual(config["default_pitch"], 0)


if __name__ == "__main__":
    unittest.main()
