"""Fleet monitoring and alarm-escalation engine."""

__version__ = "0.1.0"
