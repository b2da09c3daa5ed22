"""
Core Infrastructure for phrase-tts.

This package provides foundational components:
    - config.py: Configuration loading and validation
    - errors.py: Error codes and the pipeline exception hierarchy
    - logging/: Structured logging with numeric levels
    - metrics.py: Prometheus metrics collection
"""
