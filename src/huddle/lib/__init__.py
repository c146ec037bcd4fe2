"""Configuration, logging and telemetry support for huddle."""
