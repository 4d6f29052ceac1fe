"""build-fleet: dispatch daemon for fleets of pipeline workers."""

__version__ = "0.1.0"
