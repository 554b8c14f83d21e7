"""medcard — personal medical-record intake service."""

__version__ = "0.1.0"
