"""odsync: pull-through cache for remote file mirrors."""

__version__ = "1.0.0"
