"""Utility modules for the picotest harness."""
