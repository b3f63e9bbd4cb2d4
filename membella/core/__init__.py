"""Core application components: configuration, database, logging, errors."""
