"""Foundational pieces every other ghostkey module depends on (configuration, logging setup)."""
