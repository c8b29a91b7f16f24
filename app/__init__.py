"""
Appointment Scheduling Service

A FastAPI-based service for booking doctor appointments, with
conflict-free slot booking, availability queries and a role-aware
appointment lifecycle.
"""

__version__ = "1.0.0"
