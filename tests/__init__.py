"""
Test suite for street-level visual matching.

Structure:
- unit/: Unit tests for individual components
- integration/: End-to-end runs of the pipeline (network mocked)
- imagery.py: deterministic synthetic test images
"""
