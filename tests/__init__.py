"""
Test suite for the Appointment Scheduling Service.

Contains unit and integration tests for booking, availability and the
appointment lifecycle.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
