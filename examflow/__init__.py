"""Stage-transition engine, live sync and tiered search for clinical exam records."""

__version__ = "0.1.0"
