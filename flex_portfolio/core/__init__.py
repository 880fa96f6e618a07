"""Configuration, logging, telemetry and credential encryption."""
