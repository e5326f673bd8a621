"""Core order lifecycle and payment logic."""
