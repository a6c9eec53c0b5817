"""MIDI -> GBA PSG song compiler."""
