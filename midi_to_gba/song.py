"""MIDI -> GBA PSG song compiler.

Stage 1: event extraction (channel tracks, note pairing, loop/end markers).
Stage 2: time quantum (largest tick unit shared by every audible event).
Stage 3: command synthesis (rests, BPM, wave RAM, note on/off registers).
Stage 4: binary encoding (value tables + opcode stream + header).
"""

import re
import struct
from collections import defaultdict
from dataclasses import dataclass, field, replace

import mido

from . import psg
from .errors import MalformedInputError, MissingSpecError, RangeError, UnsupportedFeatureError

LOOP_CONTROLLER = 111
DIRECTIVE_PREFIX = "#@"
CH4_DEFAULT = None  # CH4SPEC wildcard key

DEFAULT_CONFIG = {
    "reference_pitch": psg.REFERENCE_PITCH,
    "reference_note": psg.REFERENCE_NOTE,
    "base_rate": psg.BASE_RATE,
    "default_pitch": 0,
    "default_max_velocity": 127,
    "default_duty": 2,
    "use_length_threshold": 64 / 256,
    "max_table_size": 256,
}

OP_NOP = 0x00
OP_REST_LONG = 0x01
OP_BPM = 0x02
OP_WAVE_RAM = 0x08
OP_SOUND_ON = {1: 0x10, 2: 0x14, 3: 0x18, 4: 0x1C}
OP_SOUND_OFF = {1: 0x20, 2: 0x21, 3: 0x22, 4: 0x23}
OP_REST_SHORT = 0x80

NOTE_ON_LITERAL = 0x01
NOTE_ON_CH4_LENGTH = 0x02
FREQUENCY_USE_LENGTH = 0x80

REST_SHORT_MAX = 128
REST_LONG_MAX = 0xFFFF
FREQUENCY_TABLE_MAX = 128  # index shares a byte with the length flag
VALUE_TABLE_MAX = 256
HEADER_SIZE = 12

_CHANNEL_TRACK_RE = re.compile(r"CH([1-4])")
_DIRECTIVE_RE = re.compile(r"#@([^=]+)=(.*)")


# --- events ---------------------------------------------------------------


@dataclass(eq=False)
class Event:
    track_index: int
    absolute_time: int
    channel: int | None = None


@dataclass(eq=False)
class TempoEvent(Event):
    microseconds_per_beat: int = 500000


@dataclass(eq=False)
class TextEvent(Event):
    text: str = ""


@dataclass(eq=False)
class ControllerEvent(Event):
    controller: int = 0
    value: int = 0


@dataclass(eq=False)
class NoteEvent(Event):
    midi_channel: int = 0
    note: int = 0
    velocity: int = 0
    duration: int | None = None
    duration_second: float | None = None


@dataclass(eq=False)
class NoteOnEvent(NoteEvent):
    note_off: "NoteOffEvent | None" = field(default=None, repr=False)


@dataclass(eq=False)
class NoteOffEvent(NoteEvent):
    note_on: NoteOnEvent | None = field(default=None, repr=False)


@dataclass(eq=False)
class EndOfTrackEvent(Event):
    pass


# Lower sorts first at a shared tick.
_EVENT_PRIORITY = {
    TempoEvent: 100,
    TextEvent: 200,
    ControllerEvent: 300,
    NoteOffEvent: 1000,
    NoteOnEvent: 2000,
    EndOfTrackEvent: 10000,
}


# --- commands -------------------------------------------------------------


@dataclass(frozen=True)
class Rest:
    ticks: int


@dataclass(frozen=True)
class Bpm:
    bpm: int


@dataclass(frozen=True)
class WaveRam:
    samples: tuple[int, ...]


@dataclass(frozen=True)
class NoteOn:
    channel: int
    use_length: bool
    register: int  # SOUND1CNT_H / SOUND2CNT_L / SOUND3CNT_H / SOUND4CNT_L
    frequency: int | None = None
    noise: int | None = None  # SOUND4CNT_H low byte


@dataclass(frozen=True)
class NoteOff:
    channel: int


@dataclass(frozen=True)
class LoopPoint:
    pass


@dataclass(frozen=True)
class EndOfTrack:
    pass


# --- synthesizer state ----------------------------------------------------


@dataclass
class ChannelSpec:
    pitch: int
    max_velocity: int
    duty: int


@dataclass(frozen=True)
class Channel4Spec:
    ratio: int
    width: int
    frequency: int


@dataclass
class SynthState:
    bpm: int | None
    wave_ram: list[int]
    channel_specs: dict[int, ChannelSpec]

    def snapshot(self) -> "SynthState":
        return SynthState(
            bpm=self.bpm,
            wave_ram=list(self.wave_ram),
            channel_specs={ch: replace(spec) for ch, spec in self.channel_specs.items()},
        )


def resolve_config(config: dict | None) -> dict:
    merged = dict(DEFAULT_CONFIG)
    if config:
        merged.update(config)
    return merged


def microseconds_per_beat_to_bpm(microseconds_per_beat: int) -> int:
    if microseconds_per_beat <= 0:
        raise MalformedInputError(f"invalid tempo: {microseconds_per_beat} microseconds per beat")
    return psg.round_half_up(60_000_000 / microseconds_per_beat)


def is_loop_marker(event: Event) -> bool:
    return isinstance(event, ControllerEvent) and event.controller == LOOP_CONTROLLER


def is_silent_event(event: Event, threshold: float) -> bool:
    """True for events that take part in timing but never emit an opcode.

    A note-off is silent when its note-on fits the hardware length counter,
    since the hardware stops the note by itself. Directives are silent except
    WAVERAM, which writes wave RAM at its own tick.
    """
    if isinstance(event, (NoteOnEvent, TempoEvent, EndOfTrackEvent)):
        return False
    if isinstance(event, NoteOffEvent):
        note_on = event.note_on
        if note_on is None or note_on.duration_second is None:
            raise MalformedInputError(
                f"note-off without a paired note-on: note {event.note} at tick {event.absolute_time} "
                f"(track {event.track_index})"
            )
        return note_on.duration_second <= threshold
    if isinstance(event, ControllerEvent):
        return event.controller != LOOP_CONTROLLER
    if isinstance(event, TextEvent):
        match = _DIRECTIVE_RE.fullmatch(event.text)
        return not (match and match.group(1) == "WAVERAM")
    raise TypeError(f"unknown event type: {type(event).__name__}")


# --- stage 1: events ------------------------------------------------------


def _convert_message(msg: mido.Message, track_index: int, abs_tick: int) -> Event | None:
    if msg.type == "set_tempo":
        return TempoEvent(track_index, abs_tick, microseconds_per_beat=int(msg.tempo))
    if msg.type == "text":
        return TextEvent(track_index, abs_tick, text=msg.text)
    if msg.type == "control_change":
        return ControllerEvent(track_index, abs_tick, controller=msg.control, value=msg.value)
    if msg.type == "note_on" and msg.velocity > 0:
        return NoteOnEvent(
            track_index, abs_tick, midi_channel=msg.channel, note=msg.note, velocity=msg.velocity
        )
    if msg.type in ("note_on", "note_off"):
        # note_on with velocity 0 is a note-off.
        return NoteOffEvent(
            track_index, abs_tick, midi_channel=msg.channel, note=msg.note, velocity=msg.velocity
        )
    if msg.type == "end_of_track":
        return EndOfTrackEvent(track_index, abs_tick)
    return None


def _pair_notes(track_events: list[Event]) -> None:
    for index, note_on in enumerate(track_events):
        if not isinstance(note_on, NoteOnEvent):
            continue
        off_index = None
        for j in range(index + 1, len(track_events)):
            ev = track_events[j]
            if (
                isinstance(ev, NoteOffEvent)
                and ev.midi_channel == note_on.midi_channel
                and ev.note == note_on.note
            ):
                off_index = j
                break
        if off_index is None:
            raise MalformedInputError(
                f"no note-off for note {note_on.note} at tick {note_on.absolute_time} "
                f"(track {note_on.track_index})"
            )
        for ev in track_events[index + 1:off_index]:
            if isinstance(ev, NoteEvent):
                raise MalformedInputError(
                    f"polyphony is not allowed: note {note_on.note} at tick {note_on.absolute_time} "
                    f"overlaps tick {ev.absolute_time} (track {note_on.track_index})"
                )
        note_off = track_events[off_index]
        duration = note_off.absolute_time - note_on.absolute_time
        note_on.duration = duration
        note_off.duration = duration
        note_on.note_off = note_off
        note_off.note_on = note_on


def _is_kept(event: Event) -> bool:
    if isinstance(event, (NoteEvent, EndOfTrackEvent)):
        return True
    if isinstance(event, ControllerEvent):
        return event.controller == LOOP_CONTROLLER
    if isinstance(event, TextEvent):
        return event.text.startswith(DIRECTIVE_PREFIX)
    return False


def extract_events(mid: mido.MidiFile, warnings: list[str] | None = None) -> list[Event]:
    """Flatten CH1..CH4 tracks into one time-ordered event list starting at tick 0."""
    tpb = mid.ticks_per_beat
    events: list[Event] = []
    conductor: list[TempoEvent] = []
    ignored = defaultdict(int)

    for track_index, track in enumerate(mid.tracks):
        abs_tick = 0
        track_events: list[Event] = []
        track_ignored = defaultdict(int)
        for msg in track:
            abs_tick += msg.time
            ev = _convert_message(msg, track_index, abs_tick)
            if ev is None:
                if not msg.is_meta:
                    track_ignored[msg.type] += 1
                continue
            track_events.append(ev)

        conductor.extend(ev for ev in track_events if isinstance(ev, TempoEvent))

        match = _CHANNEL_TRACK_RE.fullmatch(track.name or "")
        if not match:
            continue
        channel = int(match.group(1))
        for ev in track_events:
            ev.channel = channel
        for msg_type, count in track_ignored.items():
            ignored[msg_type] += count

        _pair_notes(track_events)
        events.extend(ev for ev in track_events if _is_kept(ev))

    if warnings is not None:
        for msg_type, count in sorted(ignored.items()):
            warnings.append(f"{count} {msg_type} message(s) ignored")

    if not events:
        raise MalformedInputError("no events found in CH1..CH4 tracks")

    # Tempo changes before the first channel event are dropped.
    start_time = min(ev.absolute_time for ev in events)
    events.extend(ev for ev in conductor if ev.absolute_time >= start_time)

    if not any(is_loop_marker(ev) for ev in events):
        events.insert(0, ControllerEvent(-1, start_time, controller=LOOP_CONTROLLER))

    events.sort(key=lambda ev: (ev.absolute_time, _EVENT_PRIORITY[type(ev)]))

    # Keep the first loop marker and the last end-of-track only.
    loop_index = next(i for i, ev in enumerate(events) if is_loop_marker(ev))
    end_indices = [i for i, ev in enumerate(events) if isinstance(ev, EndOfTrackEvent)]
    end_index = end_indices[-1] if end_indices else None
    events = [
        ev
        for i, ev in enumerate(events)
        if (i == loop_index or not is_loop_marker(ev))
        and (i == end_index or not isinstance(ev, EndOfTrackEvent))
    ]

    for ev in events:
        ev.absolute_time -= start_time

    bpm = None
    for ev in events:
        if isinstance(ev, TempoEvent):
            bpm = microseconds_per_beat_to_bpm(ev.microseconds_per_beat)
            continue
        if isinstance(ev, NoteEvent) and ev.duration is not None:
            if bpm is None:
                raise MalformedInputError(
                    f"note at tick {ev.absolute_time} (track {ev.track_index}) precedes any tempo change"
                )
            ev.duration_second = ev.duration / tpb * 60 / bpm

    return events


# --- stage 2: time quantum ------------------------------------------------


def calc_time_quantum(events: list[Event], ticks_per_beat: int, config: dict | None = None) -> int:
    """Largest divisor of ticks_per_beat that divides every audible event time."""
    threshold = resolve_config(config)["use_length_threshold"]
    divisors = {d for d in range(2, ticks_per_beat + 1) if ticks_per_beat % d == 0}
    for ev in events:
        if is_silent_event(ev, threshold):
            continue
        divisors = {d for d in divisors if ev.absolute_time % d == 0}
    divisors.add(1)
    return max(divisors)


# --- stage 3: commands ----------------------------------------------------


def _parse_int(value: str, key: str) -> int:
    try:
        return int(value, 10)
    except ValueError:
        raise MalformedInputError(f"{key}: not an integer: {value!r}") from None


def _parse_ch4_spec(value: str) -> tuple[int | None, Channel4Spec]:
    # CH4SPEC=<note|DEFAULT>:r=<ratio>,w=<width>,s=<shift frequency>
    note_part, sep, params_part = value.partition(":")
    if not sep:
        raise MalformedInputError(f"CH4SPEC: missing ':' in {value!r}")
    note = CH4_DEFAULT if note_part == "DEFAULT" else psg.parse_note_number(note_part)
    params = {}
    for item in params_part.split(","):
        key, sep, raw = item.partition("=")
        if not sep:
            raise MalformedInputError(f"CH4SPEC: cannot parse parameter {item!r}")
        params[key.strip()] = _parse_int(raw, "CH4SPEC")
    missing = [key for key in ("r", "w", "s") if key not in params]
    if missing:
        raise MalformedInputError(f"CH4SPEC: missing parameter(s) {', '.join(missing)} in {value!r}")
    return note, Channel4Spec(ratio=params["r"], width=params["w"], frequency=params["s"])


def _apply_directive(
    event: TextEvent,
    state: SynthState,
    ch4_specs: dict[int | None, Channel4Spec],
    commands: list,
    warnings: list[str] | None,
) -> None:
    match = _DIRECTIVE_RE.fullmatch(event.text)
    if not match:
        raise MalformedInputError(f"cannot parse directive {event.text!r} at tick {event.absolute_time}")
    key, value = match.groups()
    spec = state.channel_specs[event.channel]

    if key == "PITCH":
        spec.pitch = _parse_int(value, key)
    elif key == "DUTY":
        spec.duty = _parse_int(value, key)
    elif key == "MAXVELOCITY":
        max_velocity = _parse_int(value, key)
        if max_velocity <= 0:
            raise MalformedInputError(f"MAXVELOCITY must be > 0: {max_velocity}")
        spec.max_velocity = max_velocity
    elif key == "WAVERAM":
        name, *params = value.split(",")
        generator = psg.WAVE_GENERATORS.get(name)
        if generator is None:
            raise UnsupportedFeatureError(f"unknown WAVERAM type: {name}")
        if not params:
            raise MalformedInputError(f"WAVERAM: missing parameter for {name}")
        samples = generator(_parse_int(params[0], key))
        commands.append(WaveRam(tuple(samples)))
        state.wave_ram = samples
    elif key == "CH4SPEC":
        note, ch4_spec = _parse_ch4_spec(value)
        ch4_specs[note] = ch4_spec
    elif warnings is not None:
        warnings.append(f"unknown directive {key} ignored (tick {event.absolute_time})")


def _note_on_command(
    event: NoteOnEvent,
    spec: ChannelSpec,
    ch4_specs: dict[int | None, Channel4Spec],
    config: dict,
) -> NoteOn:
    seconds = event.duration_second
    use_length = seconds <= config["use_length_threshold"]
    # Notes shorter than 1/256 s get the shortest length the counter allows.
    length64 = min(63, psg.round_half_up(64 - seconds * 256)) if use_length else 0
    length256 = min(255, psg.round_half_up(256 - seconds * 256)) if use_length else 0
    volume16 = psg.round_half_up(event.velocity / spec.max_velocity * 15)

    if event.channel == 4:
        ch4 = ch4_specs.get(event.note, ch4_specs.get(CH4_DEFAULT))
        if ch4 is None:
            raise MissingSpecError(f"channel 4 spec not defined for note {event.note}")
        return NoteOn(
            channel=4,
            use_length=use_length,
            register=psg.envelope(length64, 0, 0, 0, volume16),
            noise=psg.sound4_noise(ch4.ratio, ch4.width, ch4.frequency),
        )

    frequency = psg.get_rate_from_note_number(
        event.note + spec.pitch,
        config["base_rate"],
        config["reference_pitch"],
        config["reference_note"],
    )
    if event.channel == 3:
        level = psg.round_half_up(event.velocity / spec.max_velocity * 4)
        if level >= len(psg.SOUND3_VOLUMES):
            raise RangeError(f"velocity {event.velocity} exceeds max velocity {spec.max_velocity}")
        volume, volume75 = psg.SOUND3_VOLUMES[level]
        register = psg.sound3_volume(length256, volume, volume75)
    else:
        register = psg.envelope(length64, spec.duty, 0, 0, volume16)
    return NoteOn(channel=event.channel, use_length=use_length, register=register, frequency=frequency)


def build_commands(
    events: list[Event],
    quantum: int,
    config: dict | None = None,
    warnings: list[str] | None = None,
) -> list:
    config = resolve_config(config)
    threshold = config["use_length_threshold"]
    state = SynthState(
        bpm=None,
        wave_ram=[],
        channel_specs={
            ch: ChannelSpec(
                pitch=config["default_pitch"],
                max_velocity=config["default_max_velocity"],
                duty=config["default_duty"],
            )
            for ch in (1, 2, 3, 4)
        },
    )
    loop_state: SynthState | None = None
    ch4_specs: dict[int | None, Channel4Spec] = {}
    commands: list = []

    prev_time = 0
    for event in events:
        if not is_silent_event(event, threshold):
            delta = event.absolute_time - prev_time
            prev_time = event.absolute_time
            if delta % quantum:
                raise ValueError(f"quantum {quantum} does not divide delta {delta}")
            if delta:
                commands.append(Rest(delta // quantum))

        if isinstance(event, EndOfTrackEvent):
            commands.append(EndOfTrack())
            break
        elif isinstance(event, TempoEvent):
            bpm = microseconds_per_beat_to_bpm(event.microseconds_per_beat)
            commands.append(Bpm(bpm))
            state.bpm = bpm
        elif isinstance(event, TextEvent):
            _apply_directive(event, state, ch4_specs, commands, warnings)
        elif isinstance(event, ControllerEvent):
            if event.controller == LOOP_CONTROLLER:
                commands.append(LoopPoint())
                loop_state = state.snapshot()
        elif isinstance(event, NoteOnEvent):
            spec = state.channel_specs[event.channel]
            commands.append(_note_on_command(event, spec, ch4_specs, config))
        elif isinstance(event, NoteOffEvent):
            if not is_silent_event(event, threshold):
                commands.append(NoteOff(event.channel))
        else:
            raise TypeError(f"unknown event type: {type(event).__name__}")

    # Restore runtime-only state (BPM, wave RAM) before jumping back to the loop point.
    if loop_state is not None:
        corrections = []
        if loop_state.bpm is None:
            if state.bpm is not None and warnings is not None:
                warnings.append("loop point precedes the first tempo change; BPM is not restored on loop")
        elif state.bpm != loop_state.bpm:
            corrections.append(Bpm(loop_state.bpm))
        if loop_state.wave_ram and state.wave_ram != loop_state.wave_ram:
            corrections.append(WaveRam(tuple(loop_state.wave_ram)))
        if commands and isinstance(commands[-1], EndOfTrack):
            commands[-1:-1] = corrections
        else:
            commands.extend(corrections)

    return commands


# --- stage 4: binary ------------------------------------------------------


def _push_u8(data: bytearray, value: int) -> None:
    if not isinstance(value, int) or value < 0 or value > 0xFF:
        raise RangeError(f"byte out of range: {value} (offset {len(data)})")
    data.append(value)


def _push_u16(data: bytearray, value: int) -> None:
    if not isinstance(value, int) or value < 0 or value > 0xFFFF:
        raise RangeError(f"word out of range: {value} (offset {len(data)})")
    data += struct.pack("<H", value)


def _usage_to_table(usage: dict[int, int], max_size: int) -> list[int]:
    # Most used first, ties toward the lower value; table itself is ascending.
    ranked = sorted(usage.items(), key=lambda kv: (-kv[1], kv[0]))
    return sorted(value for value, _ in ranked[:max_size])


def build_tables(commands: list, config: dict | None = None) -> tuple[list[int], list[int], list[int]]:
    """Frequency, envelope and channel 3 value tables (unpadded)."""
    max_size = resolve_config(config)["max_table_size"]
    if max_size < 0 or max_size > VALUE_TABLE_MAX:
        raise RangeError(f"max_table_size must be 0..{VALUE_TABLE_MAX}: {max_size}")

    frequencies = set()
    envelope_usage = defaultdict(int)
    ch3_usage = defaultdict(int)
    for command in commands:
        if not isinstance(command, NoteOn):
            continue
        if command.frequency is not None:
            frequencies.add(command.frequency)
        if command.channel == 3:
            ch3_usage[command.register] += 1
        else:
            envelope_usage[command.register] += 1

    if len(frequencies) > FREQUENCY_TABLE_MAX:
        raise RangeError(f"too many distinct frequencies: {len(frequencies)} (max {FREQUENCY_TABLE_MAX})")
    return (
        sorted(frequencies),
        _usage_to_table(envelope_usage, max_size),
        _usage_to_table(ch3_usage, max_size),
    )


def _encode_rest(stream: bytearray, ticks: int) -> None:
    while ticks:
        if ticks <= REST_SHORT_MAX:
            _push_u8(stream, OP_REST_SHORT + ticks - 1)
            break
        chunk = min(ticks, REST_LONG_MAX)
        _push_u8(stream, OP_REST_LONG)
        _push_u16(stream, chunk)
        ticks -= chunk


def _encode_wave_ram(stream: bytearray, samples: tuple[int, ...]) -> None:
    if len(samples) != psg.WAVE_RAM_SAMPLES:
        raise RangeError(f"wave RAM needs {psg.WAVE_RAM_SAMPLES} samples, got {len(samples)}")
    if any(s < 0 or s > 0x0F for s in samples):
        raise RangeError(f"wave RAM sample out of range: {list(samples)}")
    _push_u8(stream, OP_WAVE_RAM)
    for i in range(0, psg.WAVE_RAM_SAMPLES, 2):
        _push_u8(stream, (samples[i] << 4) | samples[i + 1])


def _encode_note_on(
    stream: bytearray,
    command: NoteOn,
    frequency_index: dict[int, int],
    envelope_index: dict[int, int],
    ch3_index: dict[int, int],
) -> None:
    table = ch3_index if command.channel == 3 else envelope_index
    index = table.get(command.register)
    opcode = OP_SOUND_ON[command.channel]
    if index is None:
        opcode |= NOTE_ON_LITERAL
    if command.channel == 4 and command.use_length:
        opcode |= NOTE_ON_CH4_LENGTH
    _push_u8(stream, opcode)
    if index is None:
        _push_u16(stream, command.register)
    else:
        _push_u8(stream, index)
    if command.channel == 4:
        _push_u8(stream, command.noise)
    else:
        _push_u8(stream, frequency_index[command.frequency] | (FREQUENCY_USE_LENGTH if command.use_length else 0))


def build_binary(commands: list, ticks_per_beat: int, quantum: int, config: dict | None = None) -> bytes:
    frequency_table, envelope_table, ch3_table = build_tables(commands, config)
    frequency_index = {v: i for i, v in enumerate(frequency_table)}
    envelope_index = {v: i for i, v in enumerate(envelope_table)}
    ch3_index = {v: i for i, v in enumerate(ch3_table)}
    # Zero sentinel keeps each table an even length (word-aligned header).
    for table in (frequency_table, envelope_table, ch3_table):
        if len(table) % 2:
            table.append(0)

    stream = bytearray()
    loop_offset = 0
    for command in commands:
        if isinstance(command, EndOfTrack):
            break
        if isinstance(command, LoopPoint):
            loop_offset = len(stream)
        elif isinstance(command, Rest):
            _encode_rest(stream, command.ticks)
        elif isinstance(command, Bpm):
            _push_u8(stream, OP_BPM)
            _push_u16(stream, command.bpm)
        elif isinstance(command, WaveRam):
            _encode_wave_ram(stream, command.samples)
        elif isinstance(command, NoteOn):
            _encode_note_on(stream, command, frequency_index, envelope_index, ch3_index)
        elif isinstance(command, NoteOff):
            _push_u8(stream, OP_SOUND_OFF[command.channel])
        else:
            raise TypeError(f"unknown command: {command!r}")

    while len(stream) % 4:
        _push_u8(stream, OP_NOP)

    header = bytearray()
    stream_offset = HEADER_SIZE + 2 * (len(frequency_table) + len(envelope_table) + len(ch3_table))
    _push_u16(header, ticks_per_beat // quantum)
    _push_u16(header, stream_offset + len(stream))
    _push_u16(header, stream_offset + loop_offset)
    _push_u16(header, len(frequency_table))
    _push_u16(header, len(envelope_table))
    _push_u16(header, len(ch3_table))
    for table in (frequency_table, envelope_table, ch3_table):
        for value in table:
            _push_u16(header, value)

    return bytes(header + stream)


# --- decoding -------------------------------------------------------------


def _unpack(fmt: str, data: bytes, offset: int) -> tuple:
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error:
        raise MalformedInputError(f"truncated data at offset {offset}") from None


def _table_value(table: list[int], index: int, name: str, offset: int) -> int:
    if index >= len(table):
        raise MalformedInputError(f"{name} index {index} out of range at offset {offset}")
    return table[index]


def decode_binary(data: bytes) -> dict:
    """Read a compiled song back into its header, tables and opcode list."""
    scaled_tpb, end, loop, n_freq, n_env, n_ch3 = _unpack("<6H", data, 0)
    offset = HEADER_SIZE
    tables = []
    for count in (n_freq, n_env, n_ch3):
        tables.append(list(_unpack(f"<{count}H", data, offset)))
        offset += 2 * count
    frequency_table, envelope_table, ch3_table = tables
    stream_offset = offset
    if end > len(data) or end < stream_offset:
        raise MalformedInputError(f"offset to end out of range: {end}")

    ops = []
    pos = stream_offset
    while pos < end:
        start = pos
        opcode = data[pos]
        pos += 1
        if opcode >= OP_REST_SHORT:
            ops.append({"offset": start, "op": "rest", "ticks": opcode - OP_REST_SHORT + 1})
        elif opcode == OP_NOP:
            ops.append({"offset": start, "op": "nop"})
        elif opcode == OP_REST_LONG:
            (ticks,) = _unpack("<H", data, pos)
            pos += 2
            ops.append({"offset": start, "op": "rest", "ticks": ticks})
        elif opcode == OP_BPM:
            (bpm,) = _unpack("<H", data, pos)
            pos += 2
            ops.append({"offset": start, "op": "bpm", "bpm": bpm})
        elif opcode == OP_WAVE_RAM:
            packed = _unpack("<16B", data, pos)
            pos += 16
            samples = []
            for b in packed:
                samples.extend((b >> 4, b & 0x0F))
            ops.append({"offset": start, "op": "wave_ram", "samples": samples})
        elif OP_SOUND_ON[1] <= opcode < OP_SOUND_OFF[1]:
            channel = ((opcode - OP_SOUND_ON[1]) >> 2) + 1
            if channel != 4 and opcode & NOTE_ON_CH4_LENGTH:
                raise MalformedInputError(f"unknown opcode 0x{opcode:02X} at offset {start}")
            literal = bool(opcode & NOTE_ON_LITERAL)
            table = ch3_table if channel == 3 else envelope_table
            if literal:
                (register,) = _unpack("<H", data, pos)
                pos += 2
            else:
                (index,) = _unpack("<B", data, pos)
                pos += 1
                register = _table_value(table, index, "register", start)
            op = {"offset": start, "op": "note_on", "channel": channel, "register": register, "literal": literal}
            (extra,) = _unpack("<B", data, pos)
            pos += 1
            if channel == 4:
                op["use_length"] = bool(opcode & NOTE_ON_CH4_LENGTH)
                op["noise"] = extra
            else:
                op["use_length"] = bool(extra & FREQUENCY_USE_LENGTH)
                op["frequency"] = _table_value(frequency_table, extra & 0x7F, "frequency", start)
            ops.append(op)
        elif opcode in OP_SOUND_OFF.values():
            ops.append({"offset": start, "op": "note_off", "channel": opcode - OP_SOUND_OFF[1] + 1})
        else:
            raise MalformedInputError(f"unknown opcode 0x{opcode:02X} at offset {start}")

    return {
        "ticks_per_beat": scaled_tpb,
        "offset_to_end": end,
        "offset_to_loop_point": loop,
        "frequency_table": frequency_table,
        "envelope_table": envelope_table,
        "channel3_table": ch3_table,
        "stream_offset": stream_offset,
        "ops": ops,
    }


def compile_song(mid: mido.MidiFile, config: dict | None = None, warnings: list[str] | None = None) -> dict:
    if mid.type not in (0, 1):
        raise UnsupportedFeatureError(f"unsupported MIDI type {mid.type}; use type 0 or 1")
    config = resolve_config(config)
    events = extract_events(mid, warnings)
    quantum = calc_time_quantum(events, mid.ticks_per_beat, config)
    commands = build_commands(events, quantum, config, warnings)
    binary = build_binary(commands, mid.ticks_per_beat, quantum, config)
    return {
        "ticks_per_beat": mid.ticks_per_beat,
        "quantum": quantum,
        "events": events,
        "commands": commands,
        "binary": binary,
    }
