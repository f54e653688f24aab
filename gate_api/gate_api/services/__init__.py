"""Service layer: payment provider integration."""
