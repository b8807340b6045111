"""Operator CLI (``cadence``)."""
