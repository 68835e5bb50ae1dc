"""CLI command groups for APM."""
