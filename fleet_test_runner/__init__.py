"""Instrumentation test runner for fleets of attached devices."""
