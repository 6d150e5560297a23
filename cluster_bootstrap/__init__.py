"""Bootstrap orchestrator for Talos Linux clusters."""

__version__ = "0.1.0"
