"""murmurd: a local daemon exposing one messaging identity over IPC."""

__version__ = "0.1.0"
