#!/usr/bin/env python
"""MIDI -> C++ song data for the GBA PSG driver.

Tracks named CH1..CH4 drive sound channels 1..4. Tempo comes from set_tempo
events, CC111 marks the loop point and ``#@KEY=VALUE`` text events configure
the channels (PITCH, DUTY, MAXVELOCITY, WAVERAM, CH4SPEC).
"""

import os
import re
import sys
import argparse
import json
from collections import defaultdict

import mido

from .errors import CompileError
from .song import (
    DEFAULT_CONFIG,
    VALUE_TABLE_MAX,
    Bpm,
    EndOfTrack,
    LoopPoint,
    NoteOff,
    NoteOn,
    Rest,
    WaveRam,
    compile_song,
    decode_binary,
)

WORDS_PER_LINE = 16


def _clamp_int(value, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def _clamp_float(value, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


def _normalize_config(raw: dict | None, defaults: dict) -> dict:
    config = dict(defaults)
    if not raw:
        return config
    if "reference_pitch" in raw:
        config["reference_pitch"] = _clamp_float(raw["reference_pitch"], 1.0, 20000.0)
    if "reference_note" in raw:
        config["reference_note"] = _clamp_int(raw["reference_note"], 0, 127)
    if "base_rate" in raw:
        config["base_rate"] = _clamp_int(raw["base_rate"], 1, 1 << 24)
    if "default_pitch" in raw:
        config["default_pitch"] = _clamp_int(raw["default_pitch"], -127, 127)
    if "default_max_velocity" in raw:
        config["default_max_velocity"] = _clamp_int(raw["default_max_velocity"], 1, 127)
    if "default_duty" in raw:
        config["default_duty"] = _clamp_int(raw["default_duty"], 0, 3)
    if "use_length_threshold" in raw:
        # The length counter cannot express more than 64/256 s.
        config["use_length_threshold"] = _clamp_float(raw["use_length_threshold"], 0.0, 64 / 256)
    if "max_table_size" in raw:
        config["max_table_size"] = _clamp_int(raw["max_table_size"], 0, VALUE_TABLE_MAX)
    return config


def _load_config(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be an object")
    try:
        return _normalize_config(data, DEFAULT_CONFIG)
    except TypeError as exc:
        raise ValueError(f"{path}: {exc}") from None


def _default_output_path(input_path: str) -> str:
    base, _ = os.path.splitext(input_path)
    return base + ".cpp"


def _default_var_name(input_path: str) -> str:
    stem = os.path.splitext(os.path.basename(input_path))[0]
    name = re.sub(r"\W", "_", stem)
    if not name or name[0].isdigit():
        name = "_" + name
    return name


def _format_summary(result: dict, comment: str) -> str:
    per_channel = defaultdict(int)
    for cmd in result["commands"]:
        if isinstance(cmd, NoteOn):
            per_channel[cmd.channel] += 1
    decoded = decode_binary(result["binary"])

    lines = [
        f"{comment} MIDI summary: ticks_per_beat={result['ticks_per_beat']}, "
        f"quantum={result['quantum']}, events={len(result['events'])}, "
        f"commands={len(result['commands'])}",
    ]
    if per_channel:
        channels = " ".join(f"ch{ch}:{count}" for ch, count in sorted(per_channel.items()))
        lines.append(f"{comment} Channel usage: {channels}")
    lines.append(
        f"{comment} Tables: frequency={len(decoded['frequency_table'])} "
        f"envelope={len(decoded['envelope_table'])} channel3={len(decoded['channel3_table'])}"
    )
    lines.append(
        f"{comment} Stream: bytes={len(result['binary'])} "
        f"loop_offset={decoded['offset_to_loop_point']} end_offset={decoded['offset_to_end']}"
    )
    return "\n".join(lines) + "\n"


def _format_cpp_array(label: str, binary: bytes) -> str:
    words = [int.from_bytes(binary[i:i + 4], "little") for i in range(0, len(binary), 4)]
    lines = [
        "#include <cstdint>",
        "",
        "namespace Song {",
        f"  extern const std::uint32_t {label}[{len(words)}] = {{",
    ]
    for i in range(0, len(words), WORDS_PER_LINE):
        chunk = words[i:i + WORDS_PER_LINE]
        lines.append("    " + ", ".join(f"0x{w:08X}" for w in chunk) + ",")
    if len(lines) > 4:
        lines[-1] = lines[-1].rstrip(",")
    lines.append("  };")
    lines.append("}")
    return "\n".join(lines) + "\n"


def _format_command(cmd) -> str:
    if isinstance(cmd, Rest):
        return f"rest ticks={cmd.ticks}"
    if isinstance(cmd, Bpm):
        return f"bpm {cmd.bpm}"
    if isinstance(cmd, WaveRam):
        return "wave_ram " + "".join(f"{s:X}" for s in cmd.samples)
    if isinstance(cmd, NoteOn):
        text = f"note_on ch={cmd.channel} reg=0x{cmd.register:04X} length={int(cmd.use_length)}"
        if cmd.frequency is not None:
            text += f" freq={cmd.frequency}"
        if cmd.noise is not None:
            text += f" noise=0x{cmd.noise:02X}"
        return text
    if isinstance(cmd, NoteOff):
        return f"note_off ch={cmd.channel}"
    if isinstance(cmd, LoopPoint):
        return "loop_point"
    if isinstance(cmd, EndOfTrack):
        return "end_of_track"
    return repr(cmd)


def _write_trace(path: str, header_lines: list[str], result: dict) -> None:
    if not path:
        return
    decoded = decode_binary(result["binary"])
    lines = list(header_lines)
    lines.append(f"quantum={result['quantum']}")
    lines.append("")
    lines.append("[COMMANDS]")
    for cmd in result["commands"]:
        lines.append(_format_command(cmd))
    lines.append("")
    lines.append("[STREAM]")
    for op in decoded["ops"]:
        marker = " <- loop" if op["offset"] == decoded["offset_to_loop_point"] else ""
        fields = " ".join(f"{k}={v}" for k, v in op.items() if k not in ("offset", "op", "samples"))
        lines.append(f"0x{op['offset']:04X} {op['op']} {fields}".rstrip() + marker)
    lines.append(f"0x{decoded['offset_to_end']:04X} end")
    with open(path, "w", encoding="ascii", errors="ignore") as f:
        f.write("\n".join(lines) + "\n")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MIDI -> C++ song data for the GBA PSG driver")
    parser.add_argument("input_mid")
    parser.add_argument("output_cpp", nargs="?", default=None, help="Output C++ file (default: <input>.cpp)")
    parser.add_argument("--var-name", type=str, default=None, help="Array name (default: input file name)")
    parser.add_argument("--config", type=str, default=None, help="JSON file overriding compiler defaults")
    parser.add_argument("--binary-output", type=str, default="", help="Also write the raw song binary to this file")
    parser.add_argument(
        "--trace-output",
        type=str,
        default="",
        help="Write a trace log (commands and decoded opcode stream) to this file",
    )
    return parser.parse_args(argv[1:])


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv
    args = _parse_args(argv)
    input_mid = args.input_mid
    output_cpp = args.output_cpp or _default_output_path(input_mid)
    var_name = args.var_name or _default_var_name(input_mid)

    config = dict(DEFAULT_CONFIG)
    if args.config:
        try:
            config = _load_config(args.config)
        except (OSError, ValueError) as exc:
            print(f"Error: cannot load config: {exc}")
            return 2

    try:
        mid = mido.MidiFile(input_mid)
    except (OSError, EOFError, ValueError) as exc:
        print(f"Error: cannot read MIDI file: {exc}")
        return 2

    warnings: list[str] = []
    try:
        result = compile_song(mid, config, warnings)
    except CompileError as exc:
        print(f"Error: {exc}")
        return 2

    comment = "//"
    parts = [_format_summary(result, comment)]
    if warnings:
        parts.append(f"{comment} Warnings:\n" + "\n".join(f"{comment} - {w}" for w in warnings) + "\n")
        for w in warnings:
            print(f"Warning: {w}")
    parts.append(_format_cpp_array(var_name, result["binary"]))
    output = "\n".join(parts)

    with open(output_cpp, "w", encoding="ascii") as f:
        f.write(output)

    if args.binary_output:
        with open(args.binary_output, "wb") as f:
            f.write(result["binary"])

    if args.trace_output:
        header_lines = [
            f"input={input_mid}",
            f"output={output_cpp}",
            f"var_name={var_name}",
            f"ticks_per_beat={result['ticks_per_beat']}",
        ]
        _write_trace(args.trace_output, header_lines, result)

    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
