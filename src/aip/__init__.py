"""AI implementation pipeline: turn improvement recommendations into branches and pull requests."""

__version__ = "0.1.0"
