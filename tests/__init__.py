"""
Test Suite for the Orb Adaptation Core

This package contains all tests for the adaptation components:
- event bus, event stores and filters
- pattern detection, insight generation and preference learning
- learning stores, the learning action workflow and the adaptation engine
- configuration and the HTTP router
"""
