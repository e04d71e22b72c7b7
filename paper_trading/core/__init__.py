"""Core engine, models, configuration and errors."""
