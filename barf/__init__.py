"""barf: drives issues through plan, build, split and verify with Claude agent turns."""

__version__ = "0.1.0"
