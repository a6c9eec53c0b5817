"""Exceptions raised while compiling a MIDI file."""


class CompileError(Exception):
    pass


class MalformedInputError(CompileError):
    """Input MIDI data or a text directive cannot be interpreted."""


class UnsupportedFeatureError(CompileError):
    pass


class RangeError(CompileError):
    """A register field, byte or word does not fit its bit width."""


class MissingSpecError(CompileError):
    """A channel 4 note has neither its own CH4SPEC nor a DEFAULT one."""
