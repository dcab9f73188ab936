"""Mirror server for crowd-sourced video skip segments, fed from a CSV dump."""

__version__ = "0.1.0"