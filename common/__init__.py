"""
Shared building blocks: data model, failure taxonomy, geodesy helpers,
timing utilities and JSON logging setup.
"""
