"""Order lifecycle and payment reconciliation for event registrations."""

__version__ = "1.0.0"
