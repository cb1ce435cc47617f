"""
codeindex Test Suite.

Tests for the local semantic code index including:
- Unit tests for individual components
- Integration tests over a real workspace on disk
"""
