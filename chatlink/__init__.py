"""TCP chat server and terminal client with friends, groups, offline messages and Redis fan-out."""

__version__ = "0.1.0"