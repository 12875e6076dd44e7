"""
Test suite for the scene generation pipeline.

Mirrors the source tree: tests/pipeline for state and orchestration,
tests/services for the collaborator adapters.
"""
