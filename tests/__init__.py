"""
Test suite for Medilink.

Contains unit and integration tests for triage, matching, scheduling and
notification delivery.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
