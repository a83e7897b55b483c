"""
Overhead benchmark for Java instrumentation agents.

This package runs the Spring PetClinic REST application once per configured
agent and pass, applies a k6 load while a JFR recording is active, and
collects startup and request metrics into comparable per-agent reports.
"""

from .main import main

__all__ = ["main"]
