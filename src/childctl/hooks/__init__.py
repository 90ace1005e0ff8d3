"""Startup hooks injected into child interpreters."""
