"""Support libraries: configuration and HTTP API."""
