"""Telemetry hook: configure OpenTelemetry for this child interpreter."""

from childctl.telemetry import configure

configure()
