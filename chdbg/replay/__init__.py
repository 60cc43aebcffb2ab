"""Replay: applying decoded opcodes to reconstruct system state."""
