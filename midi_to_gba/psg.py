"""GBA PSG hardware model.

Note -> frequency register conversion, register bit-field packing and
wave RAM generators for the four legacy sound channels.
"""

import math
import re

from .errors import MalformedInputError, RangeError

REFERENCE_PITCH = 442.0  # A4
REFERENCE_NOTE = 69
BASE_RATE = 131072  # freq = BASE_RATE / (2048 - rate)
RATE_MAX = 2047

WAVE_RAM_SAMPLES = 32

# (volume, volume75) pairs for SOUND3CNT_H: 0%, 25%, 50%, 75%, 100%
SOUND3_VOLUMES = [
    (0, 0),
    (3, 0),
    (2, 0),
    (0, 1),
    (1, 0),
]

_NOTE_NAME_RE = re.compile(r"^([A-G])([b#])?(-?\d+)$")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def note_to_frequency(note: int, reference_pitch: float = REFERENCE_PITCH, reference_note: int = REFERENCE_NOTE) -> float:
    return reference_pitch * 2.0 ** ((note - reference_note) / 12.0)


def get_rate_from_note_number(
    note: int,
    base_rate: int = BASE_RATE,
    reference_pitch: float = REFERENCE_PITCH,
    reference_note: int = REFERENCE_NOTE,
) -> int:
    if note < 0 or note > 127:
        raise RangeError(f"note number out of range: {note}")
    rate = round_half_up(2048 - base_rate / note_to_frequency(note, reference_pitch, reference_note))
    if rate < 0 or rate > RATE_MAX:
        raise RangeError(f"rate out of range: {rate} (note {note})")
    return rate


def parse_note_number(name: str) -> int:
    """Parse a note name such as ``C4``, ``F#3`` or ``Bb-1`` (C-1 = 0)."""
    match = _NOTE_NAME_RE.match(name)
    if not match:
        raise MalformedInputError(f"cannot parse note number: {name!r}")
    letter, modifier, octave = match.groups()
    base = "C D EF G A B".index(letter)
    shift = {"#": 1, "b": -1}.get(modifier, 0)
    note = int(octave) * 12 + base + shift + 12
    if note < 0 or note > 127:
        raise MalformedInputError(f"invalid note number: {note} ({name})")
    return note


def _check_bits(name: str, value: int, bits: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise RangeError(f"{name} is not an integer: {value!r}")
    if value < 0 or value >= (1 << bits):
        raise RangeError(f"{name} overflow: {value} ({bits} bit)")


def envelope(length: int, duty: int, step: int, direction: int, volume: int) -> int:
    """SOUND1CNT_H / SOUND2CNT_L / SOUND4CNT_L layout (duty is ignored by ch4)."""
    _check_bits("length", length, 6)
    _check_bits("duty", duty, 2)
    _check_bits("envelope step", step, 3)
    _check_bits("envelope direction", direction, 1)
    _check_bits("initial volume", volume, 4)
    return length | (duty << 6) | (step << 8) | (direction << 11) | (volume << 12)


def sound3_volume(length: int, volume: int, volume75: int) -> int:
    """SOUND3CNT_H: sound length and volume select."""
    _check_bits("length", length, 8)
    _check_bits("volume", volume, 2)
    _check_bits("volume75", volume75, 1)
    return length | (volume << 13) | (volume75 << 15)


def sound4_noise(ratio: int, width: int, frequency: int) -> int:
    """Low byte of SOUND4CNT_H: dividing ratio, counter width, shift frequency."""
    _check_bits("ratio", ratio, 3)
    _check_bits("width", width, 1)
    _check_bits("shift frequency", frequency, 4)
    return ratio | (width << 3) | (frequency << 4)


def saw(rate: int) -> list[int]:
    return [math.floor(i * rate / WAVE_RAM_SAMPLES * 16) % 16 for i in range(WAVE_RAM_SAMPLES)]


WAVE_GENERATORS = {
    "SAW": saw,
}
