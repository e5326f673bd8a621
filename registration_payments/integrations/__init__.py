"""External integrations for payment processing."""
