"""Veilgate: human/bot classification gating a cloaked redirect."""

__version__ = "0.1.0"
