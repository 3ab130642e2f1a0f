"""Test doubles and factories shared by the test suite."""
